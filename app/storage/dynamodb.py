import boto3
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError
from app.settings import settings
from app.exceptions import AllocationConflictException
import logging

log = logging.getLogger(__name__)

BATCH_INDEX = "BatchIndex"

def _plain(item: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Converts DynamoDB Decimals back into ints."""
    if item is None:
        return None
    return {
        k: int(v) if isinstance(v, Decimal) else v
        for k, v in item.items()
    }

# -------------------------
# DynamoDB Service
# -------------------------
class DynamoDBService:
    """
        Batch store backed by three tables: the sequence counter, batches and
        images. Images are indexed by batch through the BatchIndex GSI, which
        is also what the batch cascade delete walks.
    """
    def __init__(self):
        session = boto3.session.Session(region_name=settings.aws_region)
        kwargs = {
            "aws_access_key_id": settings.aws_access_key_id,
            "aws_secret_access_key": settings.aws_secret_access_key,
        }
        if settings.aws_endpoint_url:
            kwargs["endpoint_url"] = settings.aws_endpoint_url

        self.resource = session.resource("dynamodb", **kwargs)
        log.info("Initialized DynamoDB resource")

        # Ensure tables exist at initialization
        self.ensure_tables()

    @property
    def sequence(self):
        return self.resource.Table(settings.sequence_table)

    @property
    def batches(self):
        return self.resource.Table(settings.batches_table)

    @property
    def images(self):
        return self.resource.Table(settings.images_table)

    def _ensure_table(self, name: str, **create_kwargs):
        try:
            table = self.resource.Table(name)
            table.load()
        except ClientError:
            table = self.resource.create_table(
                TableName=name,
                ProvisionedThroughput={"ReadCapacityUnits": 5, "WriteCapacityUnits": 5},
                **create_kwargs,
            )
            table.wait_until_exists()
            log.info("Created table %s", name)

    # Refer here: https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/dynamodb/client/create_table.html
    def ensure_tables(self):
        self._ensure_table(
            settings.sequence_table,
            KeySchema=[{"AttributeName": "name", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "name", "AttributeType": "S"}],
        )
        self._ensure_table(
            settings.batches_table,
            KeySchema=[{"AttributeName": "id", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "id", "AttributeType": "S"}],
        )
        self._ensure_table(
            settings.images_table,
            KeySchema=[{"AttributeName": "id", "KeyType": "HASH"}],
            AttributeDefinitions=[
                {"AttributeName": "id", "AttributeType": "N"},
                {"AttributeName": "batch_id", "AttributeType": "S"},
            ],
            GlobalSecondaryIndexes=[
                {
                    "IndexName": BATCH_INDEX,
                    "KeySchema": [
                        {"AttributeName": "batch_id", "KeyType": "HASH"},
                        {"AttributeName": "id", "KeyType": "RANGE"},
                    ],
                    "Projection": {"ProjectionType": "ALL"},
                    "ProvisionedThroughput": {"ReadCapacityUnits": 5, "WriteCapacityUnits": 5},
                }
            ],
        )

    # -------------------------
    # Sequence counter
    # -------------------------
    def ensure_sequence(self, start: int = 0) -> bool:
        """Provisions the counter item once. Returns False if it already existed."""
        try:
            self.sequence.put_item(
                Item={
                    "name": settings.sequence_name,
                    "current_number": start,
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                },
                ConditionExpression="attribute_not_exists(#n)",
                ExpressionAttributeNames={"#n": "name"},
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise
        log.info("Initialized sequence %s at %d", settings.sequence_name, start)
        return True

    def read_sequence(self) -> Optional[int]:
        resp = self.sequence.get_item(
            Key={"name": settings.sequence_name},
            ConsistentRead=True,
        )
        item = resp.get("Item")
        if item is None:
            return None
        return int(item["current_number"])

    def swap_sequence(self, expected: int, new: int):
        """Sets the counter to `new` only if it still holds `expected`."""
        try:
            self.sequence.update_item(
                Key={"name": settings.sequence_name},
                UpdateExpression="SET current_number = :new, updated_at = :now",
                ConditionExpression="current_number = :expected",
                ExpressionAttributeValues={
                    ":new": new,
                    ":expected": expected,
                    ":now": datetime.now(timezone.utc).isoformat(),
                },
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                raise AllocationConflictException(expected)
            raise
        log.debug("Sequence %s advanced %d -> %d", settings.sequence_name, expected, new)

    # -------------------------
    # Batches
    # -------------------------
    def insert_batch(self, item: Dict[str, Any]):
        self.batches.put_item(
            Item=item,
            ConditionExpression="attribute_not_exists(#id)",
            ExpressionAttributeNames={"#id": "id"},
        )
        log.debug("Inserted batch %s", item.get("id"))

    def get_batch(self, batch_id: str) -> Optional[Dict[str, Any]]:
        resp = self.batches.get_item(Key={"id": batch_id}, ConsistentRead=True)
        return _plain(resp.get("Item"))

    def scan_batches(self) -> List[Dict[str, Any]]:
        scan_kwargs = {}
        items = []
        while True:
            resp = self.batches.scan(**scan_kwargs)
            items.extend(_plain(it) for it in resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return items
            scan_kwargs["ExclusiveStartKey"] = last_key

    def delete_batch(self, batch_id: str) -> int:
        """Deletes the batch and, first, every image row it owns."""
        images = self.list_images(batch_id)
        with self.images.batch_writer() as writer:
            for image in images:
                writer.delete_item(Key={"id": image["id"]})
        self.batches.delete_item(Key={"id": batch_id})
        log.debug("Deleted batch %s with %d images", batch_id, len(images))
        return len(images)

    # -------------------------
    # Images
    # -------------------------
    def insert_image(self, item: Dict[str, Any]):
        self.images.put_item(
            Item=item,
            ConditionExpression="attribute_not_exists(#id)",
            ExpressionAttributeNames={"#id": "id"},
        )
        log.debug("Inserted image %s", item.get("filename"))

    def get_image(self, image_id: int) -> Optional[Dict[str, Any]]:
        resp = self.images.get_item(Key={"id": image_id}, ConsistentRead=True)
        return _plain(resp.get("Item"))

    def list_images(self, batch_id: str) -> List[Dict[str, Any]]:
        """Images of a batch, ordered by id."""
        query_kwargs = {
            "IndexName": BATCH_INDEX,
            "KeyConditionExpression": Key("batch_id").eq(batch_id),
        }
        items = []
        while True:
            resp = self.images.query(**query_kwargs)
            items.extend(_plain(it) for it in resp.get("Items", []))
            last_key = resp.get("LastEvaluatedKey")
            if not last_key:
                return items
            query_kwargs["ExclusiveStartKey"] = last_key

    def delete_image(self, image_id: int):
        self.images.delete_item(Key={"id": image_id})
        log.debug("Deleted image %s", image_id)

    def close(self):
        log.info("Closed DynamoDB resource")
