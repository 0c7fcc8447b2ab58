from functools import cached_property

from pydantic import BaseModel, Field, SecretStr

from reminder.persistence.ipush import IPush


class WebPushModel(BaseModel, frozen=True):
    """
    VAPID identity of the application server.

    Keys can be generated with `scripts/gen_vapid_keys.py`. When they are missing, the service still starts but every delivery fails.
    """

    timeout_sec: float | None = Field(default=None, gt=0)
    ttl_sec: int = Field(default=86400, ge=0)  # 24 hours, how long the push service keeps an undelivered message
    vapid_private_key: SecretStr | None = None
    vapid_public_key: str | None = None
    vapid_subject: str = "mailto:admin@example.com"

    @cached_property
    def instance(self) -> IPush:
        from reminder.persistence.web_push import (
            WebPush,
        )

        return WebPush(self)


class PushModel(BaseModel):
    dashboard_url: str = "/dashboard"
    default_icon: str = "/vite.svg"
    web_push: WebPushModel = WebPushModel()  # Object is fully defined by default

    @cached_property
    def instance(self) -> IPush:
        return self.web_push.instance
