"""
    Reserves contiguous ranges of image IDs from the shared sequence counter.

    The counter lives in DynamoDB and is advanced with a conditional update
    (compare-and-swap), so allocators in different processes never hand out
    overlapping ranges. Ranges are never given back: a reserved range whose
    batch fails to commit is simply skipped.
"""
import logging
import random
import time
from typing import Optional

from app.batch_service.codec import MAX_IMAGE_ID
from app.exceptions import (
    AllocationConflictException,
    AllocationFailedException,
    InvalidArgumentException,
    SequenceUninitializedException,
)
from app.settings import settings
from app.storage.dynamodb import DynamoDBService

log = logging.getLogger(__name__)

class SequenceAllocator:
    def __init__(
        self,
        db: DynamoDBService,
        max_attempts: Optional[int] = None,
        backoff_seconds: float = 0.02,
    ):
        self.db = db
        self.max_attempts = max_attempts or settings.allocation_max_attempts
        self.backoff_seconds = backoff_seconds

    def reserve(self, count: int) -> int:
        """
            Reserves `count` IDs and returns the first one.
            The reserved range is [first_id, first_id + count - 1].
        """
        if not isinstance(count, int) or count < 1:
            raise InvalidArgumentException(f"count must be a positive integer, got {count!r}")

        for attempt in range(1, self.max_attempts + 1):
            current = self.db.read_sequence()
            if current is None:
                raise SequenceUninitializedException(settings.sequence_name)

            first_id = current + 1
            last_id = current + count
            if last_id > MAX_IMAGE_ID:
                raise InvalidArgumentException(
                    f"Reserving {count} ids would exceed the maximum id {MAX_IMAGE_ID}"
                )

            try:
                self.db.swap_sequence(current, last_id)
            except AllocationConflictException:
                log.debug("Sequence conflict on attempt %d/%d", attempt, self.max_attempts)
                if attempt < self.max_attempts:
                    time.sleep(random.uniform(0, self.backoff_seconds * attempt))
                continue

            log.info("Reserved ids %d-%d", first_id, last_id)
            return first_id

        log.error("Gave up reserving %d ids after %d attempts", count, self.max_attempts)
        raise AllocationFailedException(self.max_attempts)
