from datetime import UTC, datetime, timedelta
from enum import Enum
from math import floor
from typing import Annotated
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, StringConstraints, field_serializer, field_validator

# Fixed width, so string ordering equals chronological ordering in every backend
DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_utc(value: datetime) -> datetime:
    """
    Convert a datetime to UTC.

    Naive datetimes are considered as already being UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def format_utc(value: datetime) -> str:
    """
    Serialize a datetime with the storage format.
    """
    return to_utc(value).strftime(DATETIME_FORMAT)


class EventStatusEnum(str, Enum):
    COMPLETED = "completed"
    """The event happened, or the owner closed it."""
    UPCOMING = "upcoming"
    """The event is waiting to happen."""


class EventModel(BaseModel):
    # Immutable fields
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), frozen=True)
    event_id: UUID = Field(default_factory=uuid4, frozen=True)
    user_id: UUID = Field(frozen=True)
    # Editable fields
    date: datetime
    image_url: str | None = None
    notification_sent: bool = False
    status: EventStatusEnum = EventStatusEnum.UPCOMING
    title: Annotated[
        str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)
    ]
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("created_at", "date", "updated_at")
    @classmethod
    def _validate_utc(cls, value: datetime) -> datetime:
        return to_utc(value)

    @field_serializer("created_at", "date", "updated_at", when_used="json")
    def _serialize_utc(self, value: datetime) -> str:
        return format_utc(value)

    def is_upcoming(self, now: datetime) -> bool:
        return self.status == EventStatusEnum.UPCOMING and self.date > now

    def should_notify(
        self,
        now: datetime,
        window_start: timedelta,
        window_end: timedelta,
    ) -> bool:
        """
        Check if the event is due for a notification.

        Both window bounds are inclusive. This is the same predicate the stores apply when searching due events.
        """
        if self.notification_sent or self.status != EventStatusEnum.UPCOMING:
            return False
        return now + window_start <= self.date <= now + window_end

    def minutes_until(self, now: datetime) -> int:
        """
        Minutes left before the event, rounded half up.
        """
        return floor((self.date - now).total_seconds() / 60 + 0.5)
