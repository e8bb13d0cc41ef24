"""
    Centralized exception handling for the FastAPI application.

    Every domain failure is an APIException carrying an HTTP status and a
    machine-readable error code, rendered as {"detail": ..., "code": ...}.
"""
from fastapi import Request, HTTPException
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import logging

log = logging.getLogger(__name__)

# Machine-readable error codes
INVALID_REQUEST = "INVALID_REQUEST"
TOO_MANY_FILES = "TOO_MANY_FILES"
FILE_TYPE_INVALID = "FILE_TYPE_INVALID"
FILE_TOO_LARGE = "FILE_TOO_LARGE"
BATCH_NOT_FOUND = "BATCH_NOT_FOUND"
IMAGE_NOT_FOUND = "IMAGE_NOT_FOUND"
UPLOAD_FAILED = "UPLOAD_FAILED"
DELETE_FAILED = "DELETE_FAILED"
DATABASE_ERROR = "DATABASE_ERROR"
STORAGE_ERROR = "STORAGE_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"

class APIException(Exception):
    """Base class for API exceptions."""
    code = INTERNAL_ERROR

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(self.detail)

# -------------------------
# Validation (400)
# -------------------------
class InvalidRequestException(APIException):
    """Exception for malformed upload or query requests."""
    code = INVALID_REQUEST

    def __init__(self, detail: str = "Invalid request"):
        super().__init__(status_code=400, detail=detail)

class InvalidArgumentException(InvalidRequestException):
    """Exception for out-of-range arguments to the allocator or filename codec."""

class TooManyFilesException(APIException):
    """Exception for batches above the configured file ceiling."""
    code = TOO_MANY_FILES

    def __init__(self, max_files: int):
        super().__init__(status_code=400, detail=f"Maximum {max_files} files allowed")

class FileTypeInvalidException(APIException):
    """Exception for payloads that are not images."""
    code = FILE_TYPE_INVALID

    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)

class FileTooLargeException(APIException):
    code = FILE_TOO_LARGE

    def __init__(self, name: str, max_bytes: int):
        super().__init__(
            status_code=400,
            detail=f"File '{name}' exceeds the maximum size of {max_bytes} bytes",
        )

# -------------------------
# Not found (404)
# -------------------------
class BatchNotFoundException(APIException):
    """Exception for when a batch is not found."""
    code = BATCH_NOT_FOUND

    def __init__(self, batch_id: str):
        super().__init__(status_code=404, detail=f"Batch '{batch_id}' not found.")

class ImageNotFoundException(APIException):
    """Exception for when an image is not found."""
    code = IMAGE_NOT_FOUND

    def __init__(self, filename: str):
        super().__init__(status_code=404, detail=f"Image '{filename}' not found.")

# -------------------------
# Server side (500)
# -------------------------
class UploadFailedException(APIException):
    """Exception for a batch commit that failed after IDs were reserved."""
    code = UPLOAD_FAILED

    def __init__(self, detail: str = "Upload failed"):
        super().__init__(status_code=500, detail=detail)

class DeleteFailedException(APIException):
    code = DELETE_FAILED

    def __init__(self, detail: str = "Failed to delete"):
        super().__init__(status_code=500, detail=detail)

class StorageException(APIException):
    """Exception for S3 failures that reach the caller."""
    code = STORAGE_ERROR

    def __init__(self, detail: str = "Storage operation failed"):
        super().__init__(status_code=500, detail=detail)

class DynamoDBException(APIException):
    """Exception for DynamoDB failures."""
    code = DATABASE_ERROR

    def __init__(self, detail: str = "Database operation failed"):
        super().__init__(status_code=500, detail=detail)

class SequenceUninitializedException(DynamoDBException):
    """The sequence counter item was never provisioned."""

    def __init__(self, name: str):
        super().__init__(f"Sequence '{name}' not initialized")

class AllocationConflictException(DynamoDBException):
    """A concurrent reservation won the compare-and-swap on the counter."""

    def __init__(self, expected: int):
        super().__init__(f"Sequence changed concurrently (expected {expected})")

class AllocationFailedException(DynamoDBException):
    """The counter could not be advanced within the retry budget."""

    def __init__(self, attempts: int):
        super().__init__(f"Failed to reserve sequence numbers after {attempts} attempts")

async def api_exception_handler(request: Request, exc: APIException):
    """Handles API exceptions."""
    log.error(f"API Exception [{exc.code}]: {exc.detail}", exc_info=exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handles FastAPI HTTP exceptions."""
    log.error(f"HTTP Exception: {exc.detail}", exc_info=exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handles malformed request bodies as INVALID_REQUEST; other validation errors keep the default 422."""
    body_errors = [e for e in exc.errors() if tuple(e.get("loc", ()))[:1] == ("body",)]
    if not body_errors:
        return await request_validation_exception_handler(request, exc)

    first = body_errors[0]
    field = ".".join(str(part) for part in tuple(first["loc"])[1:]) or "body"
    detail = f"Invalid request body: {field}: {first.get('msg', 'invalid value')}"
    log.error(f"API Exception [{INVALID_REQUEST}]: {detail}", exc_info=exc)
    return JSONResponse(
        status_code=400,
        content={"detail": detail, "code": INVALID_REQUEST},
    )

async def generic_exception_handler(request: Request, exc: Exception):
    """Handles all other exceptions."""
    log.error(f"Unhandled Exception: {str(exc)}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred.", "code": INTERNAL_ERROR},
    )

def add_exception_handlers(app):
    """Adds exception handlers to the FastAPI app."""
    app.add_exception_handler(APIException, api_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
