from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from uuid import UUID

from azure.core import MatchConditions
from azure.core.exceptions import ServiceRequestError
from azure.cosmos import ConsistencyLevel
from azure.cosmos.aio import ContainerProxy, CosmosClient
from azure.cosmos.exceptions import (
    CosmosAccessConditionFailedError,
    CosmosHttpResponseError,
    CosmosResourceNotFoundError,
)
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from reminder.helpers.cache import lru_acache
from reminder.helpers.config_models.database import CosmosDbModel
from reminder.helpers.http import azure_transport
from reminder.helpers.identity import credential
from reminder.helpers.logging import logger
from reminder.helpers.monitoring import suppress
from reminder.models.event import EventModel, EventStatusEnum, format_utc
from reminder.models.readiness import ReadinessEnum
from reminder.models.user import PushSubscriptionModel, UserModel
from reminder.persistence.istore import IStore

# Retry on network errors, Cosmos DB SDK already retries on throttling
_network_retry = retry(
    reraise=True,
    retry=retry_if_exception_type(ServiceRequestError),
    stop=stop_after_attempt(3),
    wait=wait_random_exponential(multiplier=0.8, max=8),
)


class CosmosDbStore(IStore):
    """
    Cosmos DB store.

    Containers are expected to exist, events are partitioned by `/user_id` and users by `/id`. Email uniqueness is enforced by a unique key policy on `/email` of the users container.
    """

    _config: CosmosDbModel

    def __init__(self, config: CosmosDbModel):
        logger.info(
            "Using Cosmos DB %s/%s and %s",
            config.database,
            config.events_container,
            config.users_container,
        )
        self._config = config

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the Cosmos DB service.

        This validates both containers exist and are reachable.
        """
        try:
            for container in (
                self._config.events_container,
                self._config.users_container,
            ):
                async with self._use_client(container) as db:
                    await db.read()
            return ReadinessEnum.OK
        except CosmosHttpResponseError:
            logger.exception("Error requesting CosmosDB")
        except Exception:
            logger.exception("Unknown error while checking Cosmos DB readiness")
        return ReadinessEnum.FAIL

    @_network_retry
    async def event_search_due(
        self,
        window_start: datetime,
        window_end: datetime,
    ) -> list[EventModel]:
        logger.debug("Searching due events between %s and %s", window_start, window_end)
        events: list[EventModel] = []
        async with self._use_client(self._config.events_container) as db:
            # Dates are stored with a fixed width format, string comparison is chronological
            items = db.query_items(
                query="SELECT * FROM c WHERE c.date >= @window_start AND c.date <= @window_end AND c.notification_sent = false AND c.status = @status",
                parameters=[
                    {"name": "@window_start", "value": format_utc(window_start)},
                    {"name": "@window_end", "value": format_utc(window_end)},
                    {"name": "@status", "value": EventStatusEnum.UPCOMING.value},
                ],
            )
            async for raw in items:
                if not raw:
                    continue
                try:
                    events.append(EventModel.model_validate(raw))
                except ValidationError:
                    logger.debug("Parsing error", exc_info=True)
        return events

    @_network_retry
    async def event_mark_notified(
        self,
        event: EventModel,
    ) -> bool:
        logger.debug("Marking event %s as notified", event.event_id)
        now = datetime.now(UTC)
        changed = True
        try:
            async with self._use_client(self._config.events_container) as db:
                # See: https://learn.microsoft.com/en-us/azure/cosmos-db/partial-document-update#supported-operations
                await db.patch_item(
                    filter_predicate="FROM c WHERE c.notification_sent = false",
                    item=str(event.event_id),
                    partition_key=str(event.user_id),
                    patch_operations=[
                        {
                            "op": "set",
                            "path": "/notification_sent",
                            "value": True,
                        },
                        {
                            "op": "set",
                            "path": "/updated_at",
                            "value": format_utc(now),
                        },
                    ],
                )
        # Predicate did not match, the flag was already set
        except CosmosAccessConditionFailedError:
            changed = False

        # Refresh local object, the flag is set in the database either way
        event.notification_sent = True
        if changed:
            event.updated_at = now
        return changed

    @_network_retry
    async def event_create(
        self,
        event: EventModel,
    ) -> EventModel:
        logger.debug("Creating new event %s", event.event_id)
        data = event.model_dump(mode="json")
        data["id"] = str(event.event_id)
        async with self._use_client(self._config.events_container) as db:
            await db.create_item(body=data)
        return event

    @_network_retry
    async def event_get(
        self,
        event_id: UUID,
    ) -> EventModel | None:
        logger.debug("Loading event %s", event_id)
        event = None
        with suppress(StopAsyncIteration):
            async with self._use_client(self._config.events_container) as db:
                # Partition key is unknown, query across partitions
                items = db.query_items(
                    query="SELECT * FROM c WHERE STRINGEQUALS(c.id, @id)",
                    parameters=[{"name": "@id", "value": str(event_id)}],
                )
                raw = await anext(items)
                try:
                    event = EventModel.model_validate(raw)
                except ValidationError:
                    logger.debug("Parsing error", exc_info=True)
        return event

    @_network_retry
    async def user_create(
        self,
        user: UserModel,
    ) -> UserModel:
        logger.debug("Creating new user %s", user.user_id)
        data = user.model_dump(mode="json")
        data["id"] = str(user.user_id)
        async with self._use_client(self._config.users_container) as db:
            await db.create_item(body=data)
        return user

    @_network_retry
    async def user_get(
        self,
        user_id: UUID,
    ) -> UserModel | None:
        logger.debug("Loading user %s", user_id)
        user, _ = await self._user_read(user_id)
        return user

    async def user_subscription_upsert(
        self,
        user_id: UUID,
        subscription: PushSubscriptionModel,
    ) -> UserModel | None:
        logger.debug("Saving subscription %s for user %s", subscription.endpoint, user_id)
        return await self._user_update(
            user_id=user_id,
            func=lambda user: user.subscription_upsert(subscription),
        )

    async def user_subscription_remove(
        self,
        user_id: UUID,
        endpoint: str,
    ) -> UserModel | None:
        logger.debug("Removing subscription %s for user %s", endpoint, user_id)
        return await self._user_update(
            user_id=user_id,
            func=lambda user: user.subscription_remove(endpoint),
        )

    async def _user_read(
        self,
        user_id: UUID,
    ) -> tuple[UserModel | None, str | None]:
        """
        Read a user and its ETag.
        """
        raw = None
        with suppress(CosmosResourceNotFoundError):
            async with self._use_client(self._config.users_container) as db:
                raw = await db.read_item(
                    item=str(user_id),
                    partition_key=str(user_id),
                )
        if not raw:
            return None, None
        try:
            return UserModel.model_validate(raw), raw.get("_etag")
        except ValidationError:
            logger.debug("Parsing error", exc_info=True)
        return None, None

    @retry(
        reraise=True,
        retry=retry_if_exception_type(
            (CosmosAccessConditionFailedError, ServiceRequestError)
        ),  # Catch for concurrent writes and network errors
        stop=stop_after_attempt(5),
        wait=wait_random_exponential(multiplier=0.2, max=4),
    )
    async def _user_update(
        self,
        user_id: UUID,
        func: Callable[[UserModel], object],
    ) -> UserModel | None:
        """
        Read, modify and write a user with optimistic concurrency.

        The write fails with a precondition error if the user changed since the read, it is then retried from the read.
        """
        user, etag = await self._user_read(user_id)
        if not user:
            return None
        func(user)
        user.updated_at = datetime.now(UTC)
        data = user.model_dump(mode="json")
        data["id"] = str(user.user_id)
        async with self._use_client(self._config.users_container) as db:
            await db.replace_item(
                body=data,
                etag=etag,
                item=str(user.user_id),
                match_condition=MatchConditions.IfNotModified,
            )
        return user

    @lru_acache()
    async def _use_service_client(self) -> CosmosClient:
        """
        Generate the Cosmos DB client.
        """
        logger.debug("Using Cosmos DB service client for %s", self._config.endpoint)

        return CosmosClient(
            # Usage
            consistency_level=ConsistencyLevel.Strong,
            # Reliability
            connection_timeout=10,  # 10 secs
            retry_backoff_factor=0.8,
            retry_backoff_max=8,
            retry_total=3,
            # Performance
            transport=await azure_transport(),
            # Deployment
            url=self._config.endpoint,
            # Authentication
            credential=await credential(),
        )

    @asynccontextmanager
    async def _use_client(self, container: str) -> AsyncGenerator[ContainerProxy]:
        """
        Generate the container client.

        The service client is shared, it is not closed after use.
        """
        client = await self._use_service_client()
        database = client.get_database_client(self._config.database)
        yield database.get_container_client(container)
