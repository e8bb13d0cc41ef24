"""
    Batch commit, deletion and query operations.

    A commit reserves the ID range first, then writes the batch row, then one
    row per image, and only then uploads the blobs. Nothing is rolled back on
    failure: a failed commit leaves at worst a skipped ID range or image rows
    whose blob is missing, never a blob without a row.
"""
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import date, datetime, timezone
from io import BytesIO
from typing import Callable, Dict, List, Optional, Tuple
import base64
import binascii
import logging

from PIL import Image as PILImage
from botocore.exceptions import BotoCoreError, ClientError

from app.storage.dynamodb import DynamoDBService
from app.storage.s3 import S3Service
from app.batch_service.allocator import SequenceAllocator
from app.batch_service.codec import encode_filename, parse_filename
from app.batch_service.models import (
    Batch,
    BatchDetailResponse,
    BatchFile,
    BatchSummary,
    DeleteBatchResponse,
    DeleteImageResponse,
    Image,
    ListBatchesResponse,
    MarkdownResponse,
    UploadRequest,
    UploadResponse,
)
from app.settings import settings
from app.exceptions import (
    BatchNotFoundException,
    DeleteFailedException,
    DynamoDBException,
    FileTooLargeException,
    FileTypeInvalidException,
    ImageNotFoundException,
    InvalidRequestException,
    TooManyFilesException,
    UploadFailedException,
)

log = logging.getLogger(__name__)

# Pillow format -> canonical MIME type
RASTER_FORMATS = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
}

# ------------------------------
# Request decoding
# ------------------------------

def validate_image_bytes(file_bytes: bytes, content_type: str) -> str:
    """Validate that the uploaded file is a real image."""
    content_type = (content_type or "").lower()
    if not content_type.startswith("image/"):
        raise FileTypeInvalidException(f"Only image files are allowed, got '{content_type}'")
    if content_type in {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}:
        try:
            img = PILImage.open(BytesIO(file_bytes))
            img.verify()
        except Exception:
            raise FileTypeInvalidException("Invalid image file")
        if img.format not in RASTER_FORMATS:
            raise FileTypeInvalidException(f"Unsupported image format: {img.format}")
        return RASTER_FORMATS[img.format]
    return content_type

def decode_payload(data: str) -> bytes:
    """Decodes a base64 payload, dropping a leading data-URL header if present."""
    if "," in data:
        data = data.split(",", 1)[1]
    # line-wrapped payloads are accepted
    data = "".join(data.split())
    return base64.b64decode(data, validate=True)

def validate_batch_request(title: str, file_count: int, max_files: int) -> str:
    title = (title or "").strip()
    if not title:
        raise InvalidRequestException("Batch title is required")
    if file_count == 0:
        raise InvalidRequestException("At least one file is required")
    if file_count > max_files:
        raise TooManyFilesException(max_files)
    return title

def decode_upload(request: UploadRequest) -> Tuple[str, List[BatchFile]]:
    """Turns an upload body into a title and decoded files, rejecting bad input."""
    title = validate_batch_request(
        request.batch_title, len(request.files), settings.max_files_per_batch
    )
    files = []
    for f in request.files:
        try:
            data = decode_payload(f.data)
        except (binascii.Error, ValueError):
            raise InvalidRequestException(f"File '{f.name}' is not valid base64 data")
        if len(data) > settings.max_file_bytes:
            raise FileTooLargeException(f.name, settings.max_file_bytes)
        if settings.verify_image_content:
            mime = validate_image_bytes(data, f.type)
        elif not f.type.lower().startswith("image/"):
            raise FileTypeInvalidException(f"Only image files are allowed, got '{f.type}'")
        else:
            mime = f.type
        files.append(BatchFile(name=f.name, data=data, size=len(data), mime=mime))
    return title, files

# ------------------------------
# Helpers
# ------------------------------

def delivery_url(filename: str) -> str:
    return f"{settings.delivery_base_url.rstrip('/')}/{filename}"

def _to_item(model) -> dict:
    item = model.model_dump()
    # Dynamo needs datetimes as ISO strings
    for key, value in item.items():
        if isinstance(value, datetime):
            item[key] = value.isoformat()
    return item

def _fan_out(
    func: Callable,
    calls: List[tuple],
    timeout: Optional[float] = None,
) -> Tuple[Dict[str, BaseException], List[str]]:
    """
        Runs func(*call) for every call in parallel. Calls are keyed by their
        first argument. Returns the failures by key and the keys still running
        when the timeout expired.
    """
    if not calls:
        return {}, []
    executor = ThreadPoolExecutor(max_workers=min(settings.upload_concurrency, len(calls)))
    futures = {executor.submit(func, *call): call[0] for call in calls}
    try:
        done, not_done = wait(futures, timeout=timeout)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    failures = {
        futures[fut]: fut.exception()
        for fut in done
        if fut.exception() is not None
    }
    return failures, sorted(futures[fut] for fut in not_done)

# ------------------------------
# Commit
# ------------------------------

def commit_batch(
    db: DynamoDBService,
    s3: S3Service,
    title: str,
    files: List[BatchFile],
    max_files: Optional[int] = None,
    allocator: Optional[SequenceAllocator] = None,
) -> UploadResponse:
    """Assigns sequential IDs to the files and stores them as one batch."""
    max_files = max_files or settings.max_files_per_batch
    title = validate_batch_request(title, len(files), max_files)
    allocator = allocator or SequenceAllocator(db)

    try:
        first_id = allocator.reserve(len(files))
    except (BotoCoreError, ClientError) as e:
        log.error(f"Sequence reservation failed: {e}")
        raise DynamoDBException("Failed to reserve image ids")
    last_id = first_id + len(files) - 1

    now = datetime.now(timezone.utc)
    batch = Batch(
        title = title,
        uploaded_at = now,
        image_count = len(files),
        first_id = first_id,
        last_id = last_id,
        created_at = now,
    )
    try:
        db.insert_batch(_to_item(batch))
    except (BotoCoreError, ClientError) as e:
        log.error(f"DynamoDB insert_batch failed, ids {first_id}-{last_id} are lost: {e}")
        raise DynamoDBException("Failed to save batch")

    images = []
    uploads = []
    for index, f in enumerate(files):
        image_id = first_id + index
        filename = encode_filename(image_id, f.mime)
        image = Image(
            id = image_id,
            batch_id = batch.id,
            filename = filename,
            url = delivery_url(filename),
            original_filename = f.name,
            bytes = f.size,
            mime = f.mime,
            uploaded_at = now,
        )
        try:
            db.insert_image(_to_item(image))
        except (BotoCoreError, ClientError) as e:
            log.error(f"DynamoDB insert_image failed for {filename} in batch {batch.id}: {e}")
            raise UploadFailedException(f"Failed to save image {filename}; batch {batch.id} is incomplete")
        images.append(image)
        uploads.append((filename, f.data, f.mime))

    # blobs go up only once every image row exists
    failures, pending = _fan_out(s3.put, uploads, timeout=settings.commit_timeout_seconds)
    if pending:
        log.error("Batch %s timed out with %d uploads pending: %s", batch.id, len(pending), pending)
        raise UploadFailedException(f"Upload timed out; batch {batch.id} needs inspection")
    if failures:
        for key, exc in failures.items():
            log.error(f"S3 upload failed for {key} in batch {batch.id}: {exc}")
        raise UploadFailedException(
            f"Failed to upload {len(failures)} of {len(uploads)} images; batch {batch.id} is incomplete"
        )

    log.info("Committed batch %s with ids %d-%d", batch.id, first_id, last_id)
    return UploadResponse(batch=batch, images=images)

# ------------------------------
# Queries
# ------------------------------

def get_batch_meta(db: DynamoDBService, batch_id: str) -> dict:
    """Gets batch metadata from DynamoDB."""
    try:
        item = db.get_batch(batch_id)
    except (BotoCoreError, ClientError) as e:
        log.error(f"DynamoDB get_batch failed: {e}")
        raise DynamoDBException("Failed to get batch")
    if not item:
        raise BatchNotFoundException(batch_id)
    return item

def _list_images(db: DynamoDBService, batch_id: str) -> List[dict]:
    try:
        return db.list_images(batch_id)
    except (BotoCoreError, ClientError) as e:
        log.error(f"DynamoDB list_images failed: {e}")
        raise DynamoDBException("Failed to list images")

def get_batch_detail(db: DynamoDBService, batch_id: str) -> BatchDetailResponse:
    batch = get_batch_meta(db, batch_id)
    images = _list_images(db, batch_id)
    return BatchDetailResponse(
        batch=Batch(**batch),
        images=[Image(**it) for it in images],
    )

def fetch_batches(
    db: DynamoDBService,
    search: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> ListBatchesResponse:
    """Lists batch summaries, newest first, with optional title and date filters."""
    try:
        items = db.scan_batches()
    except (BotoCoreError, ClientError) as e:
        log.error(f"DynamoDB scan_batches failed: {e}")
        raise DynamoDBException("Failed to list batches")

    batches = [Batch(**it) for it in items]
    if search:
        needle = search.lower()
        batches = [b for b in batches if needle in b.title.lower()]
    if date_from:
        batches = [b for b in batches if b.uploaded_at.date() >= date_from]
    if date_to:
        batches = [b for b in batches if b.uploaded_at.date() <= date_to]
    batches.sort(key=lambda b: b.uploaded_at, reverse=True)

    summaries = []
    for batch in batches:
        images = _list_images(db, batch.id)
        summaries.append(BatchSummary(
            **batch.model_dump(),
            first_filename=images[0]["filename"] if images else None,
            last_filename=images[-1]["filename"] if images else None,
            total_bytes=sum(int(it.get("bytes", 0)) for it in images),
        ))
    return ListBatchesResponse(batches=summaries, count=len(summaries))

def build_markdown(db: DynamoDBService, batch_id: str) -> MarkdownResponse:
    """Renders the batch as an HTML comment header followed by one image embed per line."""
    batch = get_batch_meta(db, batch_id)
    images = _list_images(db, batch_id)
    lines = [f"<!-- {batch['title']} ({batch['image_count']}枚) -->"]
    lines.extend(f"![]({it['url']})" for it in images)
    return MarkdownResponse(markdown="\n".join(lines) + "\n")

# ------------------------------
# Deletion
# ------------------------------

def remove_batch(db: DynamoDBService, s3: S3Service, batch_id: str) -> DeleteBatchResponse:
    """
        Deletes every blob of the batch, then the image rows and the batch row.
        Blob deletes are best-effort: failures are reported, not fatal.
    """
    get_batch_meta(db, batch_id)
    images = _list_images(db, batch_id)

    failures, pending = _fan_out(
        s3.delete,
        [(it["filename"],) for it in images],
        timeout=settings.commit_timeout_seconds,
    )
    for key, exc in failures.items():
        log.warning(f"S3 delete failed for {key} in batch {batch_id}: {exc}")
    for key in pending:
        log.warning(f"S3 delete timed out for {key} in batch {batch_id}")

    try:
        deleted = db.delete_batch(batch_id)
    except (BotoCoreError, ClientError) as e:
        log.error(f"DynamoDB delete_batch failed: {e}")
        raise DeleteFailedException(f"Failed to delete batch {batch_id}")

    log.info("Deleted batch %s (%d images)", batch_id, deleted)
    return DeleteBatchResponse(deleted=deleted, failed_blobs=sorted(list(failures) + pending))

def remove_image(db: DynamoDBService, s3: S3Service, filename: str) -> DeleteImageResponse:
    """
        Deletes one image. The owning batch's image_count is left unchanged and
        keeps meaning "number of images originally uploaded".
    """
    image_id = parse_filename(filename)
    if image_id is None:
        raise ImageNotFoundException(filename)
    try:
        item = db.get_image(image_id)
    except (BotoCoreError, ClientError) as e:
        log.error(f"DynamoDB get_image failed: {e}")
        raise DynamoDBException("Failed to get image")
    if not item or item["filename"] != filename:
        raise ImageNotFoundException(filename)

    try:
        s3.delete(filename)
    except (BotoCoreError, ClientError) as e:
        log.warning(f"S3 delete failed for {filename}: {e}")

    try:
        db.delete_image(image_id)
    except (BotoCoreError, ClientError) as e:
        log.error(f"DynamoDB delete_image failed: {e}")
        raise DeleteFailedException(f"Failed to delete image {filename}")

    log.info("Deleted image %s from batch %s", filename, item["batch_id"])
    return DeleteImageResponse(filename=filename, batch_id=item["batch_id"])
