from typing import List, Optional
from datetime import datetime
from dataclasses import dataclass
from pydantic import BaseModel, Field, ConfigDict
from uuid import uuid4

def new_batch_id() -> str:
    """Generates a new unique batch ID."""
    return str(uuid4())

@dataclass
class BatchFile:
    """One decoded file of an upload, in the order it was submitted."""
    name: Optional[str]
    data: bytes
    size: int
    mime: str

class Batch(BaseModel):
    id: str = Field(default_factory=new_batch_id)
    title: str
    uploaded_at: datetime
    image_count: int
    first_id: int
    last_id: int
    created_at: datetime

class Image(BaseModel):
    id: int
    batch_id: str
    filename: str
    url: str
    original_filename: Optional[str] = None
    bytes: int
    mime: str
    uploaded_at: datetime

class BatchSummary(Batch):
    first_filename: Optional[str] = None
    last_filename: Optional[str] = None
    total_bytes: int = 0

# -------------------------
# Request / response bodies
# -------------------------
class UploadFileIn(BaseModel):
    name: Optional[str] = None
    data: str  # base64, optionally with a data-URL header
    size: Optional[int] = None
    type: str = ""

class UploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_title: str = Field("", alias="batchTitle")
    files: List[UploadFileIn] = []

class UploadResponse(BaseModel):
    batch: Batch
    images: List[Image]

class BatchDetailResponse(BaseModel):
    batch: Batch
    images: List[Image]

class ListBatchesResponse(BaseModel):
    batches: List[BatchSummary]
    count: int

class DeleteBatchResponse(BaseModel):
    deleted: int
    failed_blobs: List[str] = []

class DeleteImageResponse(BaseModel):
    filename: str
    batch_id: str

class MarkdownResponse(BaseModel):
    markdown: str
