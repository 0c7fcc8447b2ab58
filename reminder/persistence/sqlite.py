import asyncio
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from os import makedirs
from os.path import dirname
from uuid import UUID

from aiosqlite import Connection, connect as sqlite_connect
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor
from pydantic import ValidationError

from reminder.helpers.config_models.database import SqliteModel
from reminder.helpers.logging import logger
from reminder.models.event import EventModel, EventStatusEnum, format_utc
from reminder.models.readiness import ReadinessEnum
from reminder.models.user import PushSubscriptionModel, UserModel
from reminder.persistence.istore import IStore

# Instrument sqlite
SQLite3Instrumentor().instrument()


class SqliteStore(IStore):
    _config: SqliteModel
    _db_path: str
    _init_done: bool
    _init_lock: asyncio.Lock

    def __init__(self, config: SqliteModel):
        logger.info(
            "Using SQLite database at %s with tables %s and %s",
            config.path,
            config.events_table,
            config.users_table,
        )
        self._config = config
        self._init_done = False
        self._init_lock = asyncio.Lock()

        # Create folder if does not exist
        self._db_path = self._config.full_path()
        makedirs(name=dirname(self._db_path), exist_ok=True)

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the SQLite database.

        This checks if the database is reachable and can be queried.
        """
        try:
            async with self._use_db() as db:
                await db.execute("SELECT 1")
            return ReadinessEnum.OK
        except Exception:
            logger.exception("Unknown error while checking SQLite readiness")
        return ReadinessEnum.FAIL

    async def event_search_due(
        self,
        window_start: datetime,
        window_end: datetime,
    ) -> list[EventModel]:
        logger.debug("Searching due events between %s and %s", window_start, window_end)
        events: list[EventModel] = []
        async with self._use_db() as db:
            # Dates are stored with a fixed width format, text comparison is chronological
            cursor = await db.execute(
                f"SELECT data FROM {self._config.events_table} WHERE JSON_EXTRACT(data, '$.date') >= ? AND JSON_EXTRACT(data, '$.date') <= ? AND JSON_EXTRACT(data, '$.notification_sent') = 0 AND JSON_EXTRACT(data, '$.status') = ?",
                (
                    format_utc(window_start),  # data.date
                    format_utc(window_end),  # data.date
                    EventStatusEnum.UPCOMING.value,  # data.status
                ),
            )
            rows = await cursor.fetchall()
        for row in rows:
            try:
                events.append(EventModel.model_validate_json(row[0]))
            except ValidationError as e:
                logger.debug("Parsing error: %s", e.errors())
        return events

    async def event_mark_notified(
        self,
        event: EventModel,
    ) -> bool:
        logger.debug("Marking event %s as notified", event.event_id)
        now = datetime.now(UTC)
        async with self._use_db() as db:
            # Compare-and-set, a concurrent sweep cannot mark the same event twice
            cursor = await db.execute(
                f"UPDATE {self._config.events_table} SET data = JSON_SET(data, '$.notification_sent', JSON('true'), '$.updated_at', ?) WHERE id = ? AND JSON_EXTRACT(data, '$.notification_sent') = 0",
                (
                    format_utc(now),  # data.updated_at
                    str(event.event_id),  # id
                ),
            )
            await db.commit()
            changed = cursor.rowcount > 0

        # Refresh local object, the flag is set in the database either way
        event.notification_sent = True
        if changed:
            event.updated_at = now
        return changed

    async def event_create(
        self,
        event: EventModel,
    ) -> EventModel:
        logger.debug("Creating new event %s", event.event_id)
        async with self._use_db() as db:
            await db.execute(
                f"INSERT INTO {self._config.events_table} VALUES (?, ?)",
                (
                    str(event.event_id),  # id
                    event.model_dump_json(),  # data
                ),
            )
            await db.commit()
        return event

    async def event_get(
        self,
        event_id: UUID,
    ) -> EventModel | None:
        logger.debug("Loading event %s", event_id)
        event = None
        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT data FROM {self._config.events_table} WHERE id = ?",
                (str(event_id),),
            )
            row = await cursor.fetchone()
        if row:
            try:
                event = EventModel.model_validate_json(row[0])
            except ValidationError as e:
                logger.debug("Parsing error: %s", e.errors())
        return event

    async def user_create(
        self,
        user: UserModel,
    ) -> UserModel:
        logger.debug("Creating new user %s", user.user_id)
        async with self._use_db() as db:
            await db.execute(
                f"INSERT INTO {self._config.users_table} VALUES (?, ?)",
                (
                    str(user.user_id),  # id
                    user.model_dump_json(),  # data
                ),
            )
            await db.commit()
        return user

    async def user_get(
        self,
        user_id: UUID,
    ) -> UserModel | None:
        logger.debug("Loading user %s", user_id)
        async with self._use_db() as db:
            return await self._user_get(db, user_id)

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

    async def _user_get(
        self,
        db: Connection,
        user_id: UUID,
    ) -> UserModel | None:
        user = None
        cursor = await db.execute(
            f"SELECT data FROM {self._config.users_table} WHERE id = ?",
            (str(user_id),),
        )
        row = await cursor.fetchone()
        if row:
            try:
                user = UserModel.model_validate_json(row[0])
            except ValidationError as e:
                logger.debug("Parsing error: %s", e.errors())
        return user

    async def _user_update(
        self,
        user_id: UUID,
        func: Callable[[UserModel], object],
    ) -> UserModel | None:
        """
        Read, modify and write a user in a single write transaction.

        Concurrent updates of the same user are serialized by SQLite, no change is lost.
        """
        async with self._use_db() as db:
            # Take the write lock before reading
            await db.execute("BEGIN IMMEDIATE")
            try:
                user = await self._user_get(db, user_id)
                if not user:
                    await db.rollback()
                    return None
                func(user)
                user.updated_at = datetime.now(UTC)
                await db.execute(
                    f"UPDATE {self._config.users_table} SET data = ? WHERE id = ?",
                    (
                        user.model_dump_json(),  # data
                        str(user_id),  # id
                    ),
                )
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        return user

    async def _init_db(self, db: Connection) -> None:
        """
        Initialize the database.

        See: https://sqlite.org/cgi/src/doc/wal2/doc/wal2.md
        """
        logger.info("Init database %s", self._db_path)
        # Optimize performance for concurrent writes
        await db.execute("PRAGMA journal_mode=WAL")
        # Create tables
        await db.execute(
            f"CREATE TABLE IF NOT EXISTS {self._config.events_table} (id VARCHAR(36) PRIMARY KEY, data TEXT)"
        )
        await db.execute(
            f"CREATE TABLE IF NOT EXISTS {self._config.users_table} (id VARCHAR(36) PRIMARY KEY, data TEXT)"
        )
        # Create indexes
        await db.execute(
            f"CREATE INDEX IF NOT EXISTS {self._config.events_table}_data_due ON {self._config.events_table} (JSON_EXTRACT(data, '$.status'), JSON_EXTRACT(data, '$.notification_sent'), JSON_EXTRACT(data, '$.date'))"
        )
        await db.execute(
            f"CREATE INDEX IF NOT EXISTS {self._config.events_table}_data_user_id ON {self._config.events_table} (JSON_EXTRACT(data, '$.user_id'))"
        )
        await db.execute(
            f"CREATE UNIQUE INDEX IF NOT EXISTS {self._config.users_table}_data_email ON {self._config.users_table} (JSON_EXTRACT(data, '$.email'))"
        )

        # Write changes to disk
        await db.commit()

    @asynccontextmanager
    async def _use_db(self) -> AsyncGenerator[Connection]:
        """
        Generate the SQLite client and close it after use.
        """
        async with sqlite_connect(
            database=self._db_path,
        ) as client:
            if not self._init_done:
                async with self._init_lock:
                    if not self._init_done:
                        await self._init_db(client)
                        self._init_done = True
            yield client
