"""
Pytest configuration for the MongoDB slow queries plugin tests.

MongoDB is replaced by FakeMongo, which hands out in-process clients that
behave like pymongo's AsyncMongoClient for the calls the sampler makes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any

import bson
import pytest
from bson.raw_bson import RawBSONDocument

from mongodb_slow_queries.config import MongoDBConfig
from mongodb_slow_queries.logging import LOGGER_NAME

FIXED_NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC)


# =============================================================================
# Helpers
# =============================================================================


def raw_record(**fields: Any) -> RawBSONDocument:
    """Encode a profiler entry the way the server sends it."""
    fields.setdefault("ts", FIXED_NOW)
    return RawBSONDocument(bson.encode(fields))


class FakeCursor:
    """Async iterable over records, optionally failing or stalling."""

    def __init__(
        self,
        records: list[Any],
        *,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self._records = records
        self._error = error
        self._delay = delay

    def __aiter__(self) -> Any:
        return self._iterate()

    async def _iterate(self) -> Any:
        for record in self._records:
            if self._delay:
                await asyncio.sleep(self._delay)
            yield record
        if self._error is not None:
            raise self._error


class FakeCollection:
    def __init__(self, mongo: FakeMongo) -> None:
        self._mongo = mongo

    def find(self, filter: dict[str, Any]) -> FakeCursor:
        self._mongo.filters.append(filter)
        if self._mongo.find_error is not None:
            raise self._mongo.find_error
        return FakeCursor(
            self._mongo.records,
            error=self._mongo.cursor_error,
            delay=self._mongo.cursor_delay,
        )


class FakeDatabase:
    def __init__(self, mongo: FakeMongo) -> None:
        self._mongo = mongo

    def get_collection(self, name: str, codec_options: Any = None) -> FakeCollection:
        self._mongo.collections.append(name)
        self._mongo.codec_options.append(codec_options)
        return FakeCollection(self._mongo)


class FakeAdmin:
    def __init__(self, mongo: FakeMongo) -> None:
        self._mongo = mongo

    async def command(self, name: str) -> dict[str, Any]:
        self._mongo.commands.append(name)
        if self._mongo.ping_delay:
            await asyncio.sleep(self._mongo.ping_delay)
        if self._mongo.ping_error is not None:
            raise self._mongo.ping_error
        return {"ok": 1.0}


class FakeClient:
    def __init__(self, mongo: FakeMongo) -> None:
        self._mongo = mongo
        self.admin = FakeAdmin(mongo)

    def __getitem__(self, name: str) -> FakeDatabase:
        self._mongo.databases.append(name)
        if self._mongo.database_error is not None:
            raise self._mongo.database_error
        return FakeDatabase(self._mongo)

    async def close(self) -> None:
        self._mongo.close_calls += 1
        if self._mongo.close_error is not None:
            raise self._mongo.close_error


class FakeMongo:
    """
    Scriptable stand-in for a MongoDB deployment.

    Set the attributes before collecting to inject records and failures, then
    inspect the recorded calls afterwards.
    """

    def __init__(self) -> None:
        self.records: list[Any] = []
        self.connect_error: Exception | None = None
        self.ping_error: Exception | None = None
        self.ping_delay = 0.0
        self.database_error: Exception | None = None
        self.find_error: Exception | None = None
        self.cursor_error: Exception | None = None
        self.cursor_delay = 0.0
        self.close_error: Exception | None = None

        self.uris: list[str] = []
        self.client_options: list[dict[str, Any]] = []
        self.commands: list[str] = []
        self.databases: list[str] = []
        self.collections: list[str] = []
        self.codec_options: list[Any] = []
        self.filters: list[dict[str, Any]] = []
        self.close_calls = 0

    def client_factory(self, uri: str, **kwargs: Any) -> FakeClient:
        self.uris.append(uri)
        self.client_options.append(kwargs)
        if self.connect_error is not None:
            raise self.connect_error
        return FakeClient(self)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_mongo() -> FakeMongo:
    """Create a FakeMongo with no records."""
    return FakeMongo()


@pytest.fixture
def mongodb_config(monkeypatch: pytest.MonkeyPatch) -> MongoDBConfig:
    """Connection parameters for an anonymous connection to 'app'."""
    monkeypatch.delenv("MONGODB_PASSWORD", raising=False)
    return MongoDBConfig(database="app")


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> Iterator[None]:
    """Remove handlers installed by setup_logging (autouse fixture)."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
