import asyncio
from http import HTTPStatus

from py_vapid import Vapid
from pywebpush import WebPushException, webpush
from requests import RequestException, Response

from reminder.helpers.config_models.push import WebPushModel
from reminder.helpers.logging import logger
from reminder.models.notification import (
    DeliveryModel,
    DeliveryStatusEnum,
    NotificationPayloadModel,
)
from reminder.models.readiness import ReadinessEnum
from reminder.models.user import PushSubscriptionModel
from reminder.persistence.ipush import IPush

# Push service answers meaning the subscription does not exist anymore
_GONE_STATUSES = (HTTPStatus.NOT_FOUND, HTTPStatus.GONE)


class WebPush(IPush):
    _config: WebPushModel

    def __init__(self, config: WebPushModel):
        self._config = config
        if not self._configured():
            logger.warning(
                "VAPID keys not configured, push notifications will not work. Generate them with scripts/gen_vapid_keys.py"
            )
            return
        logger.info("Using Web Push with VAPID subject %s", config.vapid_subject)

    @property
    def public_key(self) -> str | None:
        return self._config.vapid_public_key

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the Web Push sender.

        This only checks the VAPID keys are configured and the private key can be loaded. Push services cannot be tested without a real subscription.
        """
        if not self._configured():
            return ReadinessEnum.FAIL
        assert self._config.vapid_private_key
        try:
            Vapid.from_string(self._config.vapid_private_key.get_secret_value())
            return ReadinessEnum.OK
        except Exception:
            logger.exception("Invalid VAPID private key")
        return ReadinessEnum.FAIL

    async def send(
        self,
        subscription: PushSubscriptionModel,
        payload: NotificationPayloadModel,
    ) -> DeliveryModel:
        endpoint = subscription.endpoint
        if not self._configured():
            return DeliveryModel(
                endpoint=endpoint,
                error="VAPID keys not configured",
                status=DeliveryStatusEnum.TRANSIENT_FAILURE,
            )

        try:
            # pywebpush is blocking, do not hold the event loop
            res = await asyncio.to_thread(self._send, subscription, payload.to_json())
        except WebPushException as e:
            status_code = self._status_code(e.response)
            status = (
                DeliveryStatusEnum.PERMANENT_FAILURE
                if status_code in _GONE_STATUSES
                else DeliveryStatusEnum.TRANSIENT_FAILURE
            )
            logger.warning(
                "Push failed to %s, status %s: %s", endpoint, status_code, e.message
            )
            return DeliveryModel(
                endpoint=endpoint,
                error=e.message,
                status=status,
                status_code=status_code,
            )
        except RequestException as e:
            logger.warning("Push failed to %s, network error: %s", endpoint, e)
            return DeliveryModel(
                endpoint=endpoint,
                error=str(e),
                status=DeliveryStatusEnum.TRANSIENT_FAILURE,
            )

        logger.debug("Push sent to %s", endpoint)
        return DeliveryModel(
            endpoint=endpoint,
            status=DeliveryStatusEnum.DELIVERED,
            status_code=self._status_code(res),
        )

    def _send(
        self,
        subscription: PushSubscriptionModel,
        data: str,
    ) -> Response | str:
        assert self._config.vapid_private_key
        return webpush(
            data=data,
            subscription_info=subscription.info(),
            timeout=self._config.timeout_sec,
            ttl=self._config.ttl_sec,
            # Authentication
            vapid_claims={
                "sub": self._config.vapid_subject
            },  # New dict for each call, pywebpush adds "aud" and "exp" to it
            vapid_private_key=self._config.vapid_private_key.get_secret_value(),
        )

    def _configured(self) -> bool:
        return bool(self._config.vapid_private_key and self._config.vapid_public_key)

    @staticmethod
    def _status_code(res: Response | str | None) -> int | None:
        # pywebpush returns a string when used with curl mode, and the response may be missing on network errors
        if isinstance(res, Response):
            return res.status_code
        return None
