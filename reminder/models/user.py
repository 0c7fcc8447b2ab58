from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator, model_validator


class PushSubscriptionKeysModel(BaseModel):
    auth: str = Field(min_length=1)
    p256dh: str = Field(min_length=1)


class PushSubscriptionModel(BaseModel):
    """
    A device registered for push notifications, as returned by the browser `PushManager.subscribe()`.
    """

    endpoint: str = Field(min_length=1)
    keys: PushSubscriptionKeysModel

    def info(self) -> dict[str, Any]:
        """
        Subscription in the shape expected by pywebpush.
        """
        return self.model_dump(mode="json")


class UserModel(BaseModel):
    # Immutable fields
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), frozen=True)
    user_id: UUID = Field(default_factory=uuid4, frozen=True)
    # Editable fields
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+$")
    external_id: str | None = None  # Passwordless users, authenticated by an external identity provider
    password_hash: str | None = None
    push_subscriptions: list[PushSubscriptionModel] = []
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, email: Any) -> Any:
        """
        Emails are unique case-insensitively, store them normalized.
        """
        if isinstance(email, str):
            return email.strip().lower()
        return email

    @model_validator(mode="after")
    def _validate_credentials(self) -> "UserModel":
        if not self.external_id and not self.password_hash:
            raise ValueError("password_hash is required without external_id")
        return self

    def subscription_upsert(self, subscription: PushSubscriptionModel) -> None:
        """
        Add a subscription, or replace the one with the same endpoint.
        """
        for i, existing in enumerate(self.push_subscriptions):
            if existing.endpoint == subscription.endpoint:
                self.push_subscriptions[i] = subscription
                return
        self.push_subscriptions.append(subscription)

    def subscription_remove(self, endpoint: str) -> bool:
        """
        Remove the subscription with the given endpoint.

        Returns `True` if a subscription was removed.
        """
        count = len(self.push_subscriptions)
        self.push_subscriptions = [
            subscription
            for subscription in self.push_subscriptions
            if subscription.endpoint != endpoint
        ]
        return len(self.push_subscriptions) != count


class PushUnsubscribeModel(BaseModel):
    endpoint: str = Field(min_length=1)
