from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import uvicorn
import logging

from app.storage.dynamodb import DynamoDBService
from app.storage.s3 import S3Service
from app.settings import settings
from app.routers.batches import router as batches_router
from app.routers.delivery import router as delivery_router
from app.exceptions import add_exception_handlers

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("batch-image-service")

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
        Async context manager for FastAPI application lifecycle events.
        Initializes and closes resources (S3, DynamoDB) for the application
        and provisions the sequence counter on first start.
    """
    # Initialize resources
    app.state.s3 = S3Service()
    app.state.db = DynamoDBService()
    if settings.sequence_auto_init:
        app.state.db.ensure_sequence(settings.sequence_start)
    yield
    # Cleanup resources
    app.state.s3.close()
    app.state.db.close()

# Initialize App
app = FastAPI(
    title=settings.app_title,
    lifespan=lifespan,
    description="Batch Image Upload and Delivery Service",
)

# Add exception handlers
add_exception_handlers(app)

# CORS - Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

# Add the routers
app.include_router(batches_router, prefix="/api")
app.include_router(delivery_router)

# Check Health
@app.get("/")
def read_root():
    """
        Default end point

    """
    return "Batch Image Service is running."

if __name__ == "__main__":
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
