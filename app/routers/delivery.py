"""
    Read-only image delivery.

    Serves blobs by their 8-digit filename with immutable caching headers and
    answers conditional requests with 304.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, Response
from botocore.exceptions import BotoCoreError, ClientError
import logging

from app.storage.s3 import S3Service
from app.dependencies.dependencies import get_s3_service
from app.batch_service.codec import is_valid_filename
from app.exceptions import StorageException

log = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=31536000, immutable"

router = APIRouter(
    prefix="/cdn",
    tags=["delivery"]
)

def etag_matches(if_none_match: str, etag: str) -> bool:
    """Checks an If-None-Match header value against an ETag."""
    if if_none_match.strip() == "*":
        return True
    candidates = [c.strip() for c in if_none_match.split(",")]
    return any(c.removeprefix("W/") == etag.removeprefix("W/") for c in candidates)

@router.get("/healthz", response_class=PlainTextResponse)
def healthz():
    return "OK"

@router.get("/{filename}")
def serve_image(
    filename: str,
    request: Request,
    s3: S3Service = Depends(get_s3_service)
):
    if not is_valid_filename(filename):
        return PlainTextResponse("Invalid filename format", status_code=400)

    try:
        blob = s3.get(filename)
    except (BotoCoreError, ClientError) as e:
        log.error(f"Error fetching {filename} from S3: {e}")
        raise StorageException(f"Failed to fetch {filename}")
    if blob is None:
        return PlainTextResponse("Not Found", status_code=404)

    headers = {
        "ETag": blob.etag,
        "Cache-Control": CACHE_CONTROL,
    }
    if_none_match = request.headers.get("if-none-match")
    if if_none_match and etag_matches(if_none_match, blob.etag):
        return Response(status_code=304, headers=headers)

    return Response(content=blob.body, media_type=blob.content_type, headers=headers)
