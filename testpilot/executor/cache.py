"""
Result Cache.

Content-addressable store mapping (namespace, key, content hash) to a typed
result payload. A changed content hash is always a miss, so a cached result
is never served for content that has changed since it was recorded.
"""

import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Annotated, Any, Dict, Iterable, Literal, Optional, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from testpilot.executor.errors import CacheEntryError
from testpilot.executor.types import CacheStats, ExecutionOutcome, TestUnit

PAYLOAD_SCHEMA_VERSION = 1


class OutcomePayload(BaseModel):
    """Cached result of a unit execution."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["outcome"] = "outcome"
    schema_version: int = PAYLOAD_SCHEMA_VERSION
    passed: bool
    duration_ms: int
    worker_id: str = ""
    attempt: int = 1
    error_message: Optional[str] = None
    recorded_at: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_outcome(cls, outcome: ExecutionOutcome) -> "OutcomePayload":
        return cls(
            passed=outcome.passed,
            duration_ms=outcome.duration_ms,
            worker_id=outcome.worker_id,
            attempt=outcome.attempt,
            error_message=outcome.error_message,
            recorded_at=outcome.timestamp,
        )

    def to_outcome(self, unit: TestUnit) -> ExecutionOutcome:
        """Rebuild an outcome for ``unit`` marked as served from the cache."""
        return ExecutionOutcome(
            unit=unit,
            worker_id=self.worker_id,
            passed=self.passed,
            duration_ms=self.duration_ms,
            timestamp=self.recorded_at,
            error_message=self.error_message,
            attempt=self.attempt,
            cached=True,
        )


class DataPayload(BaseModel):
    """Free-form payload for result kinds other than unit outcomes."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["data"] = "data"
    schema_version: int = PAYLOAD_SCHEMA_VERSION
    data: Dict[str, Any] = Field(default_factory=dict)


CachePayload = Annotated[
    Union[OutcomePayload, DataPayload], Field(discriminator="kind")
]

_payload_adapter: TypeAdapter = TypeAdapter(CachePayload)


@dataclass
class CacheEntry:
    """One cached payload, unique by (namespace, key, hash)."""
    namespace: str
    key: str
    hash: str
    payload: Union[OutcomePayload, DataPayload]
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        """Validate the entry."""
        for name in ("namespace", "key", "hash"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise CacheEntryError(name, "must be a non-empty string")

        if isinstance(self.payload, dict):
            try:
                self.payload = _payload_adapter.validate_python(self.payload)
            except ValidationError as e:
                raise CacheEntryError("payload", str(e)) from e
        elif not isinstance(self.payload, (OutcomePayload, DataPayload)):
            raise CacheEntryError(
                "payload", f"unsupported payload type {type(self.payload).__name__}"
            )

    @property
    def identity(self) -> tuple:
        return (self.namespace, self.key, self.hash)


def _copy_entry(entry: CacheEntry) -> CacheEntry:
    return replace(entry, payload=entry.payload.model_copy(deep=True))


class CacheBackend(ABC):
    """Storage behind a ResultCache."""

    @abstractmethod
    def fetch(self, namespace: str, key: str, hash: str) -> Optional[CacheEntry]:
        ...

    @abstractmethod
    def store(self, entry: CacheEntry) -> None:
        ...

    @abstractmethod
    def latest_for_key(self, namespace: str, key: str) -> Optional[CacheEntry]:
        """Most recent entry for a key, whatever its hash."""
        ...

    @abstractmethod
    def delete_namespace(self, namespace: str) -> int:
        ...

    @abstractmethod
    def delete_key(self, namespace: str, key: str) -> int:
        ...

    @abstractmethod
    def delete_older_than(self, cutoff: datetime) -> int:
        ...

    @abstractmethod
    def delete_all(self) -> int:
        ...

    @abstractmethod
    def count(self) -> int:
        ...

    def close(self) -> None:
        pass


class MemoryCacheBackend(CacheBackend):
    """
    Process-local dictionary backend.

    Entries are copied on the way in and on the way out, so neither the
    caller that stored an entry nor one that fetched it can alter the cache.
    """

    def __init__(self) -> None:
        self._entries: Dict[tuple, CacheEntry] = {}
        self._lock = threading.Lock()

    def fetch(self, namespace: str, key: str, hash: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get((namespace, key, hash))
        return _copy_entry(entry) if entry is not None else None

    def store(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.identity] = _copy_entry(entry)

    def latest_for_key(self, namespace: str, key: str) -> Optional[CacheEntry]:
        with self._lock:
            candidates = [
                e for (ns, k, _), e in self._entries.items()
                if ns == namespace and k == key
            ]
        if not candidates:
            return None
        return _copy_entry(max(candidates, key=lambda e: e.timestamp))

    def _delete_where(self, predicate) -> int:
        with self._lock:
            doomed = [ident for ident, e in self._entries.items() if predicate(e)]
            for ident in doomed:
                del self._entries[ident]
            return len(doomed)

    def delete_namespace(self, namespace: str) -> int:
        return self._delete_where(lambda e: e.namespace == namespace)

    def delete_key(self, namespace: str, key: str) -> int:
        return self._delete_where(
            lambda e: e.namespace == namespace and e.key == key
        )

    def delete_older_than(self, cutoff: datetime) -> int:
        return self._delete_where(lambda e: e.timestamp < cutoff)

    def delete_all(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            return removed

    def count(self) -> int:
        with self._lock:
            return len(self._entries)


def default_cache_path() -> Path:
    return Path.cwd() / ".testpilot" / "cache" / "test_cache.db"


class SqliteCacheBackend(CacheBackend):
    """
    SQLite backend for durability across runs.

    Entries live in a single ``cache_entries`` table with a unique
    (namespace, key, hash) constraint; payloads are stored as JSON.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None) -> None:
        """
        Open (and create if needed) the cache database.

        Args:
            db_path: Database file, or ":memory:". Defaults to
                ``.testpilot/cache/test_cache.db`` under the working directory.
        """
        if db_path is None:
            db_path = default_cache_path()
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._conn = self._connect(self.db_path)
        self._init_schema()
        logger.debug(f"Opened result cache database at {self.db_path}")

    def _connect(self, path: str) -> sqlite3.Connection:
        conn = sqlite3.connect(
            path,
            check_same_thread=False,
            isolation_level=None,
            timeout=5.0,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    hash TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    UNIQUE(namespace, key, hash)
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_cache_namespace_key "
                "ON cache_entries(namespace, key)"
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_cache_timestamp "
                "ON cache_entries(timestamp)"
            )

    @staticmethod
    def _format_ts(ts: datetime) -> str:
        return ts.isoformat(timespec="microseconds")

    def _row_to_entry(self, row: sqlite3.Row) -> Optional[CacheEntry]:
        try:
            payload = _payload_adapter.validate_json(row["payload"])
            return CacheEntry(
                namespace=row["namespace"],
                key=row["key"],
                hash=row["hash"],
                payload=payload,
                timestamp=datetime.fromisoformat(row["timestamp"]),
            )
        except (ValidationError, CacheEntryError, ValueError) as e:
            logger.warning(
                f"Ignoring unreadable cache row {row['namespace']}/{row['key']}: {e}"
            )
            return None

    def fetch(self, namespace: str, key: str, hash: str) -> Optional[CacheEntry]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM cache_entries "
                "WHERE namespace = ? AND key = ? AND hash = ?",
                (namespace, key, hash),
            ).fetchone()
        return self._row_to_entry(row) if row is not None else None

    def store(self, entry: CacheEntry) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries
                (namespace, key, hash, timestamp, payload)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.namespace,
                    entry.key,
                    entry.hash,
                    self._format_ts(entry.timestamp),
                    entry.payload.model_dump_json(),
                ),
            )

    def latest_for_key(self, namespace: str, key: str) -> Optional[CacheEntry]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM cache_entries WHERE namespace = ? AND key = ? "
                "ORDER BY timestamp DESC LIMIT 1",
                (namespace, key),
            ).fetchone()
        return self._row_to_entry(row) if row is not None else None

    def _delete(self, where: str, args: tuple) -> int:
        with self._lock:
            cur = self._conn.execute(f"DELETE FROM cache_entries {where}", args)
            return cur.rowcount

    def delete_namespace(self, namespace: str) -> int:
        return self._delete("WHERE namespace = ?", (namespace,))

    def delete_key(self, namespace: str, key: str) -> int:
        return self._delete("WHERE namespace = ? AND key = ?", (namespace, key))

    def delete_older_than(self, cutoff: datetime) -> int:
        return self._delete("WHERE timestamp < ?", (self._format_ts(cutoff),))

    def delete_all(self) -> int:
        return self._delete("", ())

    def count(self) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS count FROM cache_entries"
            ).fetchone()
        return int(row["count"])

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class ResultCache:
    """
    Best-effort result cache with hit/miss accounting.

    Lookups never raise: backend failures are logged and reported as misses,
    and failed writes are dropped. Only malformed entries (a configuration
    error) raise, as CacheEntryError.

    Example:
        with ResultCache(SqliteCacheBackend()) as cache:
            payload = cache.get("ui", unit.key, unit.content_hash)
            if payload is None:
                cache.put(CacheEntry("ui", unit.key, unit.content_hash, result))
    """

    def __init__(self, backend: Optional[CacheBackend] = None) -> None:
        """
        Initialize the cache.

        Args:
            backend: Storage backend. Uses an in-memory backend if not provided.
        """
        self._backend = backend or MemoryCacheBackend()
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    def _record(self, hit: bool) -> None:
        with self._lock:
            if hit:
                self._hits += 1
            else:
                self._misses += 1

    def get(
        self, namespace: str, key: str, hash: str
    ) -> Optional[Union[OutcomePayload, DataPayload]]:
        """
        Look up the payload stored for an exact (namespace, key, hash).

        Args:
            namespace: Logical namespace, e.g. "ui_tests".
            key: Unit key.
            hash: Content hash the result must have been recorded for.

        Returns:
            The payload, or None on a miss (including stale hashes).
        """
        try:
            entry = self._backend.fetch(namespace, key, hash)
        except Exception as e:
            logger.warning(f"Cache lookup failed for {namespace}/{key}: {e}")
            entry = None

        self._record(entry is not None)
        if entry is None:
            return None
        logger.debug(f"Cache hit for {namespace}/{key} ({hash[:12]})")
        return entry.payload

    def put(self, entry: CacheEntry) -> None:
        """
        Store an entry, replacing any entry with the same identity.

        Raises:
            CacheEntryError: If entry is not a CacheEntry.
        """
        if not isinstance(entry, CacheEntry):
            raise CacheEntryError("entry", f"expected CacheEntry, got {type(entry).__name__}")

        try:
            self._backend.store(entry)
        except Exception as e:
            logger.warning(
                f"Cache write failed for {entry.namespace}/{entry.key}: {e}"
            )

    def clear_namespace(self, namespace: str) -> int:
        """Remove every entry in ``namespace``; other namespaces are untouched."""
        try:
            removed = self._backend.delete_namespace(namespace)
        except Exception as e:
            logger.warning(f"Failed to clear cache namespace {namespace}: {e}")
            return 0
        logger.info(f"Cleared {removed} cache entries from namespace {namespace}")
        return removed

    def clear_all(self) -> int:
        """Remove every entry."""
        try:
            removed = self._backend.delete_all()
        except Exception as e:
            logger.warning(f"Failed to clear cache: {e}")
            return 0
        logger.info(f"Cleared {removed} cache entries")
        return removed

    def invalidate(self, namespace: str, key: str) -> int:
        """Remove every recorded hash for one key."""
        try:
            return self._backend.delete_key(namespace, key)
        except Exception as e:
            logger.warning(f"Failed to invalidate {namespace}/{key}: {e}")
            return 0

    def cleanup_older_than(self, max_age_days: int = 30) -> int:
        """Remove entries recorded more than ``max_age_days`` ago."""
        cutoff = datetime.now() - timedelta(days=max_age_days)
        try:
            removed = self._backend.delete_older_than(cutoff)
        except Exception as e:
            logger.warning(f"Cache cleanup failed: {e}")
            return 0
        if removed:
            logger.info(f"Removed {removed} cache entries older than {max_age_days} days")
        return removed

    def duration_estimates(
        self, namespace: str, keys: Iterable[str]
    ) -> Dict[str, int]:
        """
        Last recorded duration per key, whatever the hash it was recorded for.

        Does not touch the hit/miss counters.
        """
        estimates: Dict[str, int] = {}
        for key in keys:
            try:
                entry = self._backend.latest_for_key(namespace, key)
            except Exception as e:
                logger.warning(f"Duration lookup failed for {namespace}/{key}: {e}")
                continue
            if entry is not None and isinstance(entry.payload, OutcomePayload):
                estimates[key] = entry.payload.duration_ms
        return estimates

    def stats(self) -> CacheStats:
        """Current size and lookup counters."""
        try:
            size = self._backend.count()
        except Exception as e:
            logger.warning(f"Failed to count cache entries: {e}")
            size = 0
        with self._lock:
            return CacheStats(size=size, hits=self._hits, misses=self._misses)

    def close(self) -> None:
        """Flush and release the backend."""
        try:
            self._backend.close()
        except Exception as e:
            logger.warning(f"Failed to close cache backend: {e}")

    def __enter__(self) -> "ResultCache":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
