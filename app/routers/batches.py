from fastapi import APIRouter, Depends, Query, Response
from datetime import date
from typing import Optional
import logging

from app.storage.dynamodb import DynamoDBService
from app.storage.s3 import S3Service
from app.dependencies.dependencies import get_s3_service, get_dynamodb_service
from app.batch_service.service import (
    build_markdown,
    commit_batch,
    decode_upload,
    fetch_batches,
    get_batch_detail,
    remove_batch,
    remove_image,
)
from app.batch_service.models import (
    BatchDetailResponse,
    DeleteBatchResponse,
    DeleteImageResponse,
    ListBatchesResponse,
    MarkdownResponse,
    UploadRequest,
    UploadResponse,
)
from app.settings import settings

log = logging.getLogger(__name__)

router = APIRouter(tags=["batch-image-service"])

@router.get("/health")
def health():
    return {"status": "ok", "service": settings.app_title}

@router.post("/upload", response_model=UploadResponse)
def upload_batch(
    body: UploadRequest,
    response: Response,
    db: DynamoDBService = Depends(get_dynamodb_service),
    s3: S3Service = Depends(get_s3_service)
):
    """Uploads a batch of base64 encoded images and assigns them sequential IDs."""
    response.headers["X-Content-Type-Options"] = "nosniff"
    title, files = decode_upload(body)
    return commit_batch(db=db, s3=s3, title=title, files=files)

@router.get("/batches", response_model=ListBatchesResponse)
def list_batches(
    search: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    db: DynamoDBService = Depends(get_dynamodb_service)
):
    """Lists batches, newest first."""
    return fetch_batches(db, search=search, date_from=date_from, date_to=date_to)

@router.get("/batches/{batch_id}", response_model=BatchDetailResponse)
def get_batch(
    batch_id: str,
    db: DynamoDBService = Depends(get_dynamodb_service)
):
    """Gets a batch and its images ordered by ID."""
    return get_batch_detail(db, batch_id)

@router.delete("/batches/{batch_id}", response_model=DeleteBatchResponse)
def delete_batch(
    batch_id: str,
    db: DynamoDBService = Depends(get_dynamodb_service),
    s3: S3Service = Depends(get_s3_service)
):
    """Deletes a batch, its image records and their blobs."""
    return remove_batch(db, s3, batch_id)

@router.post("/batches/{batch_id}/markdown", response_model=MarkdownResponse)
def batch_markdown(
    batch_id: str,
    db: DynamoDBService = Depends(get_dynamodb_service)
):
    """Generates Markdown image embeds for a batch."""
    return build_markdown(db, batch_id)

@router.delete("/images/{filename}", response_model=DeleteImageResponse)
def delete_image(
    filename: str,
    db: DynamoDBService = Depends(get_dynamodb_service),
    s3: S3Service = Depends(get_s3_service)
):
    """Deletes a single image and its blob."""
    return remove_image(db, s3, filename)
