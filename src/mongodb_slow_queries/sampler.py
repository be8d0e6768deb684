"""
Slow query sampling against the MongoDB profiler collection.

This module implements the SlowQuerySampler class that, once per call:
- Connects to MongoDB with a secondaryPreferred read preference
- Pings the server before querying
- Reads system.profile entries newer than the start of the sampling window
- Folds their durations into count / total_time / average_time

The whole collection is bounded by a timeout and the client is closed on every
exit path. Nothing is cached between calls.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import quote_plus

import bson
from bson.codec_options import CodecOptions
from bson.errors import BSONError
from bson.int64 import Int64
from bson.raw_bson import RawBSONDocument
from pymongo import AsyncMongoClient
from pymongo.errors import PyMongoError

from mongodb_slow_queries.errors import UnavailableError
from mongodb_slow_queries.logging import get_logger

if TYPE_CHECKING:
    from mongodb_slow_queries.config import MongoDBConfig

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

PROFILE_COLLECTION = "system.profile"
TIMESTAMP_FIELD = "ts"
DURATION_FIELD = "millis"

AUTH_SOURCE = "admin"
READ_PREFERENCE = "secondaryPreferred"

DEFAULT_TIMEOUT_SECONDS = 10.0
# Share of the collection budget given to server selection, so an unreachable
# server is reported by the ping with its reason before the budget runs out.
SERVER_SELECTION_FRACTION = 0.5
DEFAULT_WINDOW = timedelta(minutes=1)

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1

# Documents are fetched undecoded so that one malformed entry can be skipped
# without failing the cursor.
_RAW_OPTIONS: CodecOptions[RawBSONDocument] = CodecOptions(
    document_class=RawBSONDocument
)
_DECODE_OPTIONS: CodecOptions[dict[str, Any]] = CodecOptions(tz_aware=True)


# =============================================================================
# Data Models
# =============================================================================


class DurationKind(str, Enum):
    """Numeric shapes the profiler's duration field arrives in."""

    INT32 = "int32"
    INT64 = "int64"
    DOUBLE = "double"
    OTHER = "other"


@dataclass(frozen=True)
class SamplingWindow:
    """
    Half-open time interval ``(start, end]`` of profiler entries to read.

    Only ``start`` is used in the query; ``end`` records when the window was
    computed.
    """

    start: datetime
    end: datetime

    @classmethod
    def ending_at(
        cls,
        end: datetime | None = None,
        width: timedelta = DEFAULT_WINDOW,
    ) -> SamplingWindow:
        """Build the window of the given width that ends at ``end`` (default now)."""
        if end is None:
            end = datetime.now(UTC)
        return cls(start=end - width, end=end)

    def query_filter(self) -> dict[str, Any]:
        """Return the profiler filter selecting entries newer than ``start``."""
        return {TIMESTAMP_FIELD: {"$gt": self.start}}


@dataclass(frozen=True)
class SlowQueryMetrics:
    """
    Slow query statistics for one sampling window.

    Attributes:
        count: Number of profiler entries in the window.
        total_time: Sum of their durations in milliseconds.
        average_time: total_time / count, or 0 when count is 0.
    """

    count: int = 0
    total_time: float = 0.0
    average_time: float = 0.0

    @classmethod
    def from_totals(cls, count: int, total_time: float) -> SlowQueryMetrics:
        """Build metrics from a count and a duration sum."""
        average_time = total_time / count if count > 0 else 0.0
        return cls(count=count, total_time=total_time, average_time=average_time)

    def to_dict(self) -> dict[str, float]:
        """Convert to the metric name to value mapping reported to Mackerel."""
        return {
            "count": float(self.count),
            "total_time": self.total_time,
            "average_time": self.average_time,
        }


# =============================================================================
# Decoding
# =============================================================================


def classify_duration(value: Any) -> DurationKind:
    """
    Classify a duration value by its BSON numeric type.

    PyMongo decodes BSON int64 as ``Int64`` and int32 as plain ``int``. A plain
    ``int`` outside the 32-bit range can only have been built in Python, and is
    treated as int64. ``bool`` is a subclass of ``int`` but is not a duration.
    """
    if isinstance(value, bool):
        return DurationKind.OTHER
    if isinstance(value, Int64):
        return DurationKind.INT64
    if isinstance(value, int):
        if INT32_MIN <= value <= INT32_MAX:
            return DurationKind.INT32
        return DurationKind.INT64
    if isinstance(value, float):
        return DurationKind.DOUBLE
    return DurationKind.OTHER


def duration_of(record: Mapping[str, Any]) -> float:
    """Return the record's duration in milliseconds, or 0.0 if it has none."""
    value = record.get(DURATION_FIELD)
    if classify_duration(value) is DurationKind.OTHER:
        return 0.0
    return float(value)


def decode_record(raw: Any) -> dict[str, Any] | None:
    """
    Decode one profiler entry.

    Args:
        raw: A RawBSONDocument, raw BSON bytes, or an already decoded mapping.

    Returns:
        The decoded document, or None when it cannot be decoded.
    """
    try:
        if isinstance(raw, RawBSONDocument):
            return bson.decode(raw.raw, codec_options=_DECODE_OPTIONS)
        if isinstance(raw, (bytes, bytearray, memoryview)):
            return bson.decode(bytes(raw), codec_options=_DECODE_OPTIONS)
    except (BSONError, ValueError, TypeError) as e:
        logger.debug("Skipping undecodable profiler entry", extra={"error": str(e)})
        return None

    if isinstance(raw, Mapping):
        return dict(raw)

    logger.debug(
        "Skipping profiler entry of unexpected type",
        extra={"type": type(raw).__name__},
    )
    return None


async def aggregate_records(records: AsyncIterable[Any]) -> SlowQueryMetrics:
    """
    Fold profiler entries into SlowQueryMetrics.

    Entries that cannot be decoded are skipped and not counted. Entries with
    a missing or non-numeric duration are counted with zero duration.

    Args:
        records: Async iterable of profiler entries (normally a cursor).

    Returns:
        Aggregated metrics.

    Raises:
        UnavailableError: If the cursor fails while being iterated. Sums
            accumulated up to that point are discarded.
    """
    count = 0
    total_time = 0.0
    skipped = 0

    try:
        async for raw in records:
            record = decode_record(raw)
            if record is None:
                skipped += 1
                continue
            count += 1
            total_time += duration_of(record)
    except PyMongoError as e:
        raise UnavailableError(
            f"cursor error: {e}",
            details={"records_read": count, "records_skipped": skipped},
        ) from e

    if skipped:
        logger.info(
            "Skipped undecodable profiler entries",
            extra={"skipped": skipped, "count": count},
        )

    return SlowQueryMetrics.from_totals(count, total_time)


# =============================================================================
# Connection
# =============================================================================


def build_mongodb_uri(config: MongoDBConfig) -> str:
    """
    Build the connection string for the configured instance.

    Credentials are included, with authSource=admin, only when both username
    and password are set.

    Example:
        >>> build_mongodb_uri(MongoDBConfig(database="app"))
        'mongodb://localhost:27017/app'
    """
    host = config.host
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    address = f"{host}:{config.port}"

    if config.has_credentials:
        return (
            f"mongodb://{quote_plus(config.username)}:{quote_plus(config.password)}"
            f"@{address}/{config.database}?authSource={AUTH_SOURCE}"
        )
    return f"mongodb://{address}/{config.database}"


# =============================================================================
# SlowQuerySampler Class
# =============================================================================


class SlowQuerySampler:
    """
    Single-shot sampler of the MongoDB slow query log.

    Every call to collect() opens its own client, pings, reads the profiler
    entries of the sampling window and closes the client again.

    Example:
        >>> sampler = SlowQuerySampler(MongoDBConfig(database="app"))
        >>> metrics = await sampler.collect()
        >>> metrics.to_dict()
        {'count': 3.0, 'total_time': 245.5, 'average_time': 81.83333333333333}
    """

    def __init__(
        self,
        config: MongoDBConfig,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        window: timedelta = DEFAULT_WINDOW,
        client_factory: Callable[..., Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the SlowQuerySampler.

        Args:
            config: Connection parameters.
            timeout_seconds: Upper bound on connect, ping, query and decode.
            window: Width of the sampling window.
            client_factory: Callable building the client from a URI and
                keyword options. Defaults to pymongo's AsyncMongoClient.
            clock: Callable returning the current aware datetime.
        """
        self._config = config
        self._timeout_seconds = timeout_seconds
        self._window = window
        self._client_factory = client_factory or AsyncMongoClient
        self._clock = clock or (lambda: datetime.now(UTC))

    async def collect(self) -> SlowQueryMetrics:
        """
        Collect slow query metrics for the window ending now.

        Returns:
            SlowQueryMetrics for the window.

        Raises:
            UnavailableError: On connection, ping, query or cursor failure,
                or when the timeout expires.
        """
        try:
            return await asyncio.wait_for(
                self._collect(), timeout=self._timeout_seconds
            )
        except TimeoutError as e:
            raise UnavailableError(
                f"timed out after {self._timeout_seconds:g}s collecting slow queries",
                details=self._details(),
            ) from e

    async def _collect(self) -> SlowQueryMetrics:
        window = SamplingWindow.ending_at(self._clock(), self._window)
        client = self._connect()
        try:
            await self._ping(client)
            cursor = self._find(client, window)
            metrics = await aggregate_records(cursor)
        finally:
            await self._release(client)

        logger.debug(
            "Collected slow query metrics",
            extra={
                **self._details(),
                "window_start": window.start.isoformat(),
                "count": metrics.count,
                "total_time": metrics.total_time,
            },
        )
        return metrics

    def _connect(self) -> Any:
        timeout_ms = int(self._timeout_seconds * 1000)
        selection_ms = int(timeout_ms * SERVER_SELECTION_FRACTION)
        try:
            return self._client_factory(
                build_mongodb_uri(self._config),
                readPreference=READ_PREFERENCE,
                serverSelectionTimeoutMS=selection_ms,
                connectTimeoutMS=selection_ms,
                tz_aware=True,
            )
        except PyMongoError as e:
            raise UnavailableError(
                f"failed to connect to MongoDB: {e}", details=self._details()
            ) from e

    async def _ping(self, client: Any) -> None:
        try:
            await client.admin.command("ping")
        except PyMongoError as e:
            raise UnavailableError(
                f"failed to ping MongoDB: {e}", details=self._details()
            ) from e

    def _find(self, client: Any, window: SamplingWindow) -> Any:
        try:
            collection = client[self._config.database].get_collection(
                PROFILE_COLLECTION, codec_options=_RAW_OPTIONS
            )
            return collection.find(window.query_filter())
        except PyMongoError as e:
            raise UnavailableError(
                f"failed to find documents: {e}", details=self._details()
            ) from e

    async def _release(self, client: Any) -> None:
        try:
            await client.close()
        except Exception as e:
            logger.warning(
                "Failed to disconnect from MongoDB",
                extra={**self._details(), "error": str(e)},
            )

    def _details(self) -> dict[str, Any]:
        return {
            "host": self._config.host,
            "port": self._config.port,
            "database": self._config.database,
        }
