import asyncio
import random
import string
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio

from reminder.helpers.config_models.database import SqliteModel
from reminder.helpers.config_models.scheduler import SchedulerModel
from reminder.helpers.notification_scheduler import NotificationScheduler
from reminder.models.event import EventModel, EventStatusEnum
from reminder.models.notification import (
    DeliveryModel,
    DeliveryStatusEnum,
    NotificationPayloadModel,
)
from reminder.models.readiness import ReadinessEnum
from reminder.models.user import (
    PushSubscriptionKeysModel,
    PushSubscriptionModel,
    UserModel,
)
from reminder.persistence.ipush import IPush
from reminder.persistence.sqlite import SqliteStore

_STATUS_CODES = {
    DeliveryStatusEnum.DELIVERED: 201,
    DeliveryStatusEnum.PERMANENT_FAILURE: 410,
    DeliveryStatusEnum.TRANSIENT_FAILURE: 500,
}


class PushMock(IPush):
    """
    Push sender recording the deliveries, without network.

    Endpoints are delivered unless listed in `statuses`. Endpoints listed in `errors` raise an unexpected exception.
    """

    delay_sec: float
    errors: set[str]
    key: str | None
    sent: list[tuple[str, NotificationPayloadModel]]
    statuses: dict[str, DeliveryStatusEnum]

    def __init__(self) -> None:
        self.delay_sec = 0
        self.errors = set()
        self.key = "BDummyPublicKey"
        self.sent = []
        self.statuses = {}

    @property
    def public_key(self) -> str | None:
        return self.key

    async def readiness(self) -> ReadinessEnum:
        return ReadinessEnum.OK

    async def send(
        self,
        subscription: PushSubscriptionModel,
        payload: NotificationPayloadModel,
    ) -> DeliveryModel:
        self.sent.append((subscription.endpoint, payload))
        if self.delay_sec:
            await asyncio.sleep(self.delay_sec)
        if subscription.endpoint in self.errors:
            raise RuntimeError("Unexpected push error")
        status = self.statuses.get(subscription.endpoint, DeliveryStatusEnum.DELIVERED)
        return DeliveryModel(
            endpoint=subscription.endpoint,
            error=None if status == DeliveryStatusEnum.DELIVERED else "Push failed",
            status=status,
            status_code=_STATUS_CODES[status],
        )


@pytest.fixture
def random_text() -> str:
    return "".join(random.choice(string.ascii_lowercase) for _ in range(10))


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


@pytest.fixture
def store(tmp_path) -> SqliteStore:
    """
    Empty SQLite store, one database file per test.
    """
    return SqliteStore(SqliteModel(path=str(tmp_path / "reminder.db")))


@pytest.fixture
def push() -> PushMock:
    return PushMock()


@pytest.fixture
def scheduler_config() -> SchedulerModel:
    return SchedulerModel()


@pytest.fixture
def scheduler(
    now: datetime,
    push: PushMock,
    scheduler_config: SchedulerModel,
    store: SqliteStore,
) -> NotificationScheduler:
    return NotificationScheduler(
        clock=lambda: now,
        config=scheduler_config,
        dashboard_url="/dashboard",
        default_icon="/icon.svg",
        push=push,
        store=store,
    )


@pytest.fixture
def subscription_factory(
    random_text: str,
) -> Callable[[str], PushSubscriptionModel]:
    def _factory(name: str) -> PushSubscriptionModel:
        return PushSubscriptionModel(
            endpoint=f"https://push.example.com/{random_text}/{name}",
            keys=PushSubscriptionKeysModel(
                auth=f"auth-{name}",
                p256dh=f"p256dh-{name}",
            ),
        )

    return _factory


@pytest.fixture
def user_factory(
    store: SqliteStore,
    subscription_factory: Callable[[str], PushSubscriptionModel],
):
    """
    Create a user in the store, with a subscription per given name.
    """

    async def _factory(*subscriptions: str) -> UserModel:
        user = UserModel(
            email=f"{''.join(random.choice(string.ascii_lowercase) for _ in range(10))}@example.com",
            password_hash="dummy-hash",
            push_subscriptions=[subscription_factory(name) for name in subscriptions],
        )
        return await store.user_create(user)

    return _factory


@pytest.fixture
def event_factory(
    now: datetime,
    store: SqliteStore,
):
    """
    Create an event in the store, starting after the given delay.
    """

    async def _factory(
        user: UserModel,
        starts_in: timedelta,
        notification_sent: bool = False,
        status: EventStatusEnum = EventStatusEnum.UPCOMING,
        title: str = "Team meeting",
    ) -> EventModel:
        event = EventModel(
            date=now + starts_in,
            notification_sent=notification_sent,
            status=status,
            title=title,
            user_id=user.user_id,
        )
        return await store.event_create(event)

    return _factory


@pytest_asyncio.fixture
async def user(user_factory) -> UserModel:
    return await user_factory("laptop")
