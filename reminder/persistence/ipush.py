from abc import ABC, abstractmethod

from reminder.helpers.monitoring import start_as_current_span
from reminder.models.notification import DeliveryModel, NotificationPayloadModel
from reminder.models.readiness import ReadinessEnum
from reminder.models.user import PushSubscriptionModel


class IPush(ABC):
    @property
    @abstractmethod
    def public_key(self) -> str | None:
        """
        Application server key the browsers need to subscribe, `None` if not configured.
        """

    @abstractmethod
    @start_as_current_span("push_readiness")
    async def readiness(self) -> ReadinessEnum:
        pass

    @abstractmethod
    @start_as_current_span("push_send")
    async def send(
        self,
        subscription: PushSubscriptionModel,
        payload: NotificationPayloadModel,
    ) -> DeliveryModel:
        """
        Deliver a payload to a single subscription.

        Never raises for delivery errors, they are classified in the returned model. No retry is done.
        """
