import os
import pytest
from moto import mock_aws
from fastapi.testclient import TestClient

# Set test environment variables BEFORE importing app modules
os.environ["TESTING"] = "true"

# Dummy AWS credentials for moto
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ["AWS_SECURITY_TOKEN"] = "testing"
os.environ["AWS_SESSION_TOKEN"] = "testing"
os.environ["AWS_REGION"] = "us-east-1"
os.environ["S3_BUCKET"] = "batch-image-bucket"
os.environ["DELIVERY_BASE_URL"] = "https://img.example.com/"
# Clear the AWS_ENDPOINT_URL so moto mocks are used instead of localstack
os.environ.pop("AWS_ENDPOINT_URL", None)

from app.main import app
from app.settings import settings
from app.storage.s3 import S3Service
from app.storage.dynamodb import DynamoDBService


@pytest.fixture(scope="function")
def aws_credentials():
    """Mocked AWS Credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"


@pytest.fixture(scope="function")
def aws(aws_credentials):
    with mock_aws():
        yield


@pytest.fixture(scope="function")
def db_service(aws):
    """DynamoDB batch store with the sequence counter provisioned at 0."""
    db = DynamoDBService()
    db.ensure_sequence(0)
    return db


@pytest.fixture(scope="function")
def s3_service(aws):
    return S3Service()


@pytest.fixture(scope="function")
def test_client(aws):
    # The lifespan creates the bucket, the tables and the sequence counter
    # inside the moto context
    with TestClient(app) as client:
        yield client


@pytest.fixture
def small_batches(monkeypatch):
    """Lowers the per-batch file ceiling so limit tests stay fast."""
    monkeypatch.setattr(settings, "max_files_per_batch", 3)
    return 3
