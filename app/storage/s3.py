import boto3
import hashlib
from dataclasses import dataclass
from typing import Optional
from botocore.exceptions import ClientError
from app.settings import settings
import logging

log = logging.getLogger(__name__)

@dataclass
class StoredBlob:
    body: bytes
    content_type: str
    etag: str

# -------------------------
# S3 Service
# -------------------------
class S3Service:
    def __init__(self):
        session = boto3.session.Session(region_name=settings.aws_region)
        kwargs = {
            "aws_access_key_id": settings.aws_access_key_id,
            "aws_secret_access_key": settings.aws_secret_access_key,
        }
        if settings.aws_endpoint_url:
            kwargs["endpoint_url"] = settings.aws_endpoint_url

        self.client = session.client("s3", **kwargs)
        log.info("Initialized S3 client")

        # Ensure bucket exists at initialization
        self.ensure_bucket()

    def ensure_bucket(self):
        try:
            self.client.head_bucket(Bucket=settings.s3_bucket)
            log.debug("Bucket %s already exists", settings.s3_bucket)
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            if error_code in ("404", "NoSuchBucket"):
                self.client.create_bucket(Bucket=settings.s3_bucket)
                log.info("Created bucket %s", settings.s3_bucket)
            else:
                log.error("Failed to check/create bucket: %s", e)
                raise

    def put(self, key: str, data: bytes, content_type: str):
        self.client.put_object(
            Bucket=settings.s3_bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        log.debug("Uploaded %s to s3://%s/%s", key, settings.s3_bucket, key)

    def get(self, key: str) -> Optional[StoredBlob]:
        """Returns the stored object, or None when the key does not exist."""
        try:
            resp = self.client.get_object(Bucket=settings.s3_bucket, Key=key)
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                return None
            raise
        body = resp["Body"].read()
        etag = resp.get("ETag") or f'"{hashlib.md5(body).hexdigest()}"'
        return StoredBlob(
            body=body,
            content_type=resp.get("ContentType") or "application/octet-stream",
            etag=etag,
        )

    def delete(self, key: str):
        self.client.delete_object(Bucket=settings.s3_bucket, Key=key)
        log.debug("Deleted s3://%s/%s", settings.s3_bucket, key)

    def close(self):
        log.info("Closed S3 client")
