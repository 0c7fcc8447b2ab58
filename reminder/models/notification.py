from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel

from reminder.models.event import EventModel, format_utc


class NotificationDataModel(BaseModel):
    """
    Routing hint for the service worker, when the notification is clicked.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_id: UUID | None = None
    url: str


class NotificationPayloadModel(BaseModel):
    """
    Notification displayed by the browser, serialized as the service worker expects it.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    badge: str
    body: str
    data: NotificationDataModel
    icon: str
    require_interaction: bool = False
    tag: str | None = None  # Browsers replace a displayed notification with the same tag
    title: str

    @classmethod
    def for_event(
        cls,
        event: EventModel,
        now: datetime,
        dashboard_url: str,
        default_icon: str,
    ) -> "NotificationPayloadModel":
        return cls(
            badge=default_icon,
            body=f'"{event.title}" starts in {event.minutes_until(now)} minutes!',
            data=NotificationDataModel(
                event_id=event.event_id,
                url=dashboard_url,
            ),
            icon=event.image_url or default_icon,
            require_interaction=True,
            tag=f"event-{event.event_id}",
            title="🔔 Event Reminder",
        )

    @classmethod
    def for_test(
        cls,
        dashboard_url: str,
        default_icon: str,
    ) -> "NotificationPayloadModel":
        return cls(
            badge=default_icon,
            body="This is a test notification from Event Reminder App",
            data=NotificationDataModel(url=dashboard_url),
            icon=default_icon,
            title="Test Notification",
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class DeliveryStatusEnum(str, Enum):
    DELIVERED = "delivered"
    """The push service accepted the message."""
    PERMANENT_FAILURE = "permanent_failure"
    """The endpoint does not exist anymore, the subscription must be removed."""
    TRANSIENT_FAILURE = "transient_failure"
    """Delivery failed, but the subscription may still be valid."""


class DeliveryModel(BaseModel):
    endpoint: str
    error: str | None = None
    status: DeliveryStatusEnum
    status_code: int | None = None


class SweepReportModel(BaseModel):
    # Immutable fields
    window_end: datetime
    window_start: datetime
    # Editable fields
    delivered: int = 0
    errors: int = 0
    events_found: int = 0
    events_marked: int = 0
    events_processed: int = 0
    events_skipped: int = 0
    permanent_failures: int = 0
    subscriptions_removed: int = 0
    transient_failures: int = 0

    @field_serializer("window_end", "window_start", when_used="json")
    def _serialize_utc(self, value: datetime) -> str:
        return format_utc(value)

    def add_delivery(self, delivery: DeliveryModel) -> None:
        if delivery.status == DeliveryStatusEnum.DELIVERED:
            self.delivered += 1
        elif delivery.status == DeliveryStatusEnum.PERMANENT_FAILURE:
            self.permanent_failures += 1
        else:
            self.transient_failures += 1


class NotificationTestResultModel(BaseModel):
    delivered: int
    failed: int
    subscriptions_removed: int
    total: int


class SubscriptionCountModel(BaseModel):
    message: str
    subscription_count: int
