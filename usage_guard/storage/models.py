"""
Data models for storage layer.

Defines the usage counter and usage detail records kept by the durable store.
"""

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional

MAX_TITLE_LENGTH = 500


class FeatureType(Enum):
    """Category of consumption being metered."""
    SUMMARY = "summary"
    QUESTION = "question"

    @property
    def counter_field(self) -> str:
        """Name of the counter column incremented for this feature."""
        return f"{self.value}_count"


@dataclass(frozen=True)
class UsageCounter:
    """Per-identity, per-day consumption counter.

    One counter exists per (identity, day). It is created lazily on the first
    consume of that day and is only ever archived by the retention sweeper.
    """
    identity: str
    day: date
    summary_count: int = 0
    question_count: int = 0
    total_count: int = 0
    is_premium: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    archived: bool = False

    def count_for(self, feature: FeatureType) -> int:
        """Return the counter value for a single feature type."""
        if feature is FeatureType.SUMMARY:
            return self.summary_count
        return self.question_count


@dataclass(frozen=True)
class UsageDetail:
    """Lightweight, append-only record attached to a usage counter.

    Written best-effort after the counter increment commits. ``id`` and
    ``created_at`` are assigned by the repository.
    """
    title: str = "Untitled"
    source_ref: str = ""
    model: Optional[str] = None
    size: int = 0
    correlation_id: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate size and clamp the title to the stored length."""
        if self.size < 0:
            raise ValueError("size cannot be negative")
        if self.title and len(self.title) > MAX_TITLE_LENGTH:
            object.__setattr__(self, "title", self.title[:MAX_TITLE_LENGTH])
