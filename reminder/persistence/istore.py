from abc import ABC, abstractmethod
from datetime import datetime
from uuid import UUID

from reminder.helpers.monitoring import start_as_current_span
from reminder.models.event import EventModel
from reminder.models.readiness import ReadinessEnum
from reminder.models.user import PushSubscriptionModel, UserModel


class IStore(ABC):
    """
    Data access for events and users.

    Read and write errors are raised to the caller, only unparsable documents are logged and skipped.
    """

    @abstractmethod
    @start_as_current_span("store_readiness")
    async def readiness(self) -> ReadinessEnum:
        pass

    @abstractmethod
    @start_as_current_span("store_event_search_due")
    async def event_search_due(
        self,
        window_start: datetime,
        window_end: datetime,
    ) -> list[EventModel]:
        """
        Search upcoming events not yet notified, with a date in the window.

        Both bounds are inclusive.
        """

    @abstractmethod
    @start_as_current_span("store_event_mark_notified")
    async def event_mark_notified(
        self,
        event: EventModel,
    ) -> bool:
        """
        Mark the event as notified, the flag is never reset.

        Operation is idempotent. Returns `True` only if this call changed the flag.
        """

    @abstractmethod
    @start_as_current_span("store_event_create")
    async def event_create(
        self,
        event: EventModel,
    ) -> EventModel:
        pass

    @abstractmethod
    @start_as_current_span("store_event_get")
    async def event_get(
        self,
        event_id: UUID,
    ) -> EventModel | None:
        pass

    @abstractmethod
    @start_as_current_span("store_user_create")
    async def user_create(
        self,
        user: UserModel,
    ) -> UserModel:
        pass

    @abstractmethod
    @start_as_current_span("store_user_get")
    async def user_get(
        self,
        user_id: UUID,
    ) -> UserModel | None:
        pass

    @abstractmethod
    @start_as_current_span("store_user_subscription_upsert")
    async def user_subscription_upsert(
        self,
        user_id: UUID,
        subscription: PushSubscriptionModel,
    ) -> UserModel | None:
        """
        Add a subscription to the user, replacing the one with the same endpoint.

        Returns the updated user, or `None` if the user does not exist.
        """

    @abstractmethod
    @start_as_current_span("store_user_subscription_remove")
    async def user_subscription_remove(
        self,
        user_id: UUID,
        endpoint: str,
    ) -> UserModel | None:
        """
        Remove the subscription with the endpoint from the user, other subscriptions are untouched.

        Returns the updated user, or `None` if the user does not exist.
        """
