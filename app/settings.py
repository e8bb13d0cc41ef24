from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List, Optional

class Settings(BaseSettings):
    aws_region: str = Field("us-east-1", env="AWS_REGION")
    s3_bucket: str = Field("batch-image-bucket", env="S3_BUCKET")
    aws_endpoint_url: Optional[str] = Field(None, env="AWS_ENDPOINT_URL")

    aws_access_key_id: str = Field("test", env="AWS_ACCESS_KEY_ID")
    aws_secret_access_key: str = Field("test", env="AWS_SECRET_ACCESS_KEY")

    # DynamoDB tables
    sequence_table: str = Field("Sequence", env="SEQUENCE_TABLE")
    batches_table: str = Field("Batches", env="BATCHES_TABLE")
    images_table: str = Field("Images", env="IMAGES_TABLE")

    # Sequence counter provisioning
    sequence_name: str = Field("images", env="SEQUENCE_NAME")
    sequence_start: int = Field(0, ge=0, env="SEQUENCE_START")
    sequence_auto_init: bool = Field(True, env="SEQUENCE_AUTO_INIT")
    allocation_max_attempts: int = Field(10, ge=1, env="ALLOCATION_MAX_ATTEMPTS")

    # Public address images are served from, filename is appended
    delivery_base_url: str = Field("http://localhost:8000/cdn/", env="DELIVERY_BASE_URL")

    # Upload limits
    max_files_per_batch: int = Field(500, ge=1, env="MAX_FILES_PER_BATCH")
    max_file_bytes: int = Field(10 * 1024 * 1024, env="MAX_FILE_BYTES")
    verify_image_content: bool = Field(True, env="VERIFY_IMAGE_CONTENT")
    upload_concurrency: int = Field(8, ge=1, env="UPLOAD_CONCURRENCY")
    commit_timeout_seconds: float = Field(60.0, gt=0, env="COMMIT_TIMEOUT_SECONDS")

    cors_origins: List[str] = Field(["http://localhost:8788"], env="CORS_ORIGINS")
    app_title: str = Field("Batch Image Service", env="APP_TITLE")

    class Config:
        env_file = ".env"
        extra = "allow"  # tolerate unknown vars if needed

settings = Settings()
