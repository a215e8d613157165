from __future__ import annotations

import typing as t
from datetime import datetime, timedelta

from batchrelay.db.models import utcnow

if t.TYPE_CHECKING:
    from batchrelay.db.models import Batch
    from batchrelay.settings import Settings


class CapacityBackoff:
    """
    Exponential backoff for batches the provider refused for token limits.

    With the default settings the delays are 5, 10, 20, 40 and 80 minutes,
    then stay at 80 minutes.

    Parameters
    ----------
    base_seconds : float
        Delay before the first retry.
    max_seconds : float
        Upper bound of every delay.
    """

    def __init__(self, *, base_seconds: float, max_seconds: float) -> None:
        if base_seconds <= 0 or max_seconds < base_seconds:
            raise ValueError("backoff needs 0 < base_seconds <= max_seconds")
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds

    @classmethod
    def from_settings(cls, settings: "Settings") -> "CapacityBackoff":
        return cls(
            base_seconds=settings.capacity_backoff_base_seconds,
            max_seconds=settings.capacity_backoff_max_seconds,
        )

    def delay_for_attempt(self, attempt: int) -> timedelta:
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        # clamp the exponent so huge attempt counts do not overflow floats
        exponent = min(attempt - 1, 64)
        return timedelta(seconds=min(self.base_seconds * 2**exponent, self.max_seconds))

    def next_retry_at(self, attempt: int, now: datetime | None = None) -> datetime:
        return (now or utcnow()) + self.delay_for_attempt(attempt)

    def record_rejection(self, batch: "Batch", now: datetime | None = None) -> datetime:
        """
        Count one more provider rejection on ``batch`` and schedule its retry.

        Returns
        -------
        datetime
            The new ``capacity_retry_next_at``.
        """
        batch.capacity_retry_attempts = (batch.capacity_retry_attempts or 0) + 1
        batch.capacity_retry_next_at = self.next_retry_at(batch.capacity_retry_attempts, now)
        return batch.capacity_retry_next_at

    def reset(self, batch: "Batch") -> None:
        batch.capacity_retry_attempts = 0
        batch.capacity_retry_next_at = None
