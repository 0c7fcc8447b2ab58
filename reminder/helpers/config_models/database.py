from enum import Enum
from functools import cached_property
from os.path import abspath

from pydantic import BaseModel, Field, model_validator

from reminder.persistence.istore import IStore

# Table names are interpolated in SQL queries, restrict them to safe identifiers
_TABLE_PATTERN = r"^[a-z_][a-z0-9_]*$"


class ModeEnum(str, Enum):
    COSMOS_DB = "cosmos_db"
    """Use Cosmos DB, for production deployments."""
    SQLITE = "sqlite"
    """Use a local SQLite file, for development and tests."""


class CosmosDbModel(BaseModel, frozen=True):
    database: str
    endpoint: str
    events_container: str = "events"
    users_container: str = "users"

    @cached_property
    def instance(self) -> IStore:
        from reminder.persistence.cosmos_db import (
            CosmosDbStore,
        )

        return CosmosDbStore(self)


class SqliteModel(BaseModel, frozen=True):
    events_table: str = Field(default="events", pattern=_TABLE_PATTERN)
    path: str = ".local/reminder.db"
    users_table: str = Field(default="users", pattern=_TABLE_PATTERN)

    def full_path(self) -> str:
        """
        Absolute path to the database file, relative paths are resolved from the working directory.
        """
        return abspath(self.path)

    @cached_property
    def instance(self) -> IStore:
        from reminder.persistence.sqlite import (
            SqliteStore,
        )

        return SqliteStore(self)


class DatabaseModel(BaseModel):
    cosmos_db: CosmosDbModel | None = None
    mode: ModeEnum = ModeEnum.SQLITE
    sqlite: SqliteModel | None = SqliteModel()  # Object is fully defined by default

    @model_validator(mode="after")
    def _validate_mode(self) -> "DatabaseModel":
        """
        Ensure the backend selected by `mode` is configured.
        """
        if self.mode == ModeEnum.COSMOS_DB and not self.cosmos_db:
            raise ValueError("Cosmos DB config required")
        if self.mode == ModeEnum.SQLITE and not self.sqlite:
            raise ValueError("SQLite config required")
        return self

    @cached_property
    def instance(self) -> IStore:
        if self.mode == ModeEnum.SQLITE:
            assert self.sqlite
            return self.sqlite.instance

        assert self.cosmos_db
        return self.cosmos_db.instance
