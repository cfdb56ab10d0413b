"""File Store Service - async SQLite persistence for file metadata.

This service:
- Persists one row per uploaded file (slug, key, URL, size, mime type)
- Looks files up by id or short-link slug and lists them newest first
- Deletes single, selected or all records, returning what was removed so the
  caller can delete the objects from storage
- Runs every query through with_retry, reporting to the database monitor
- Exposes ping() as the monitor's health probe
"""

import asyncio
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Optional, TypeVar

import aiosqlite

from bucket.core.config import ConfigManager
from bucket.core.lifecycle import BaseComponent, HealthCheckResult
from bucket.core.logging import ServerLogger
from bucket.core.retry import BucketError, OptionsLike, with_retry

if TYPE_CHECKING:
    from bucket.services.db_monitor import DatabaseMonitor
    from bucket.services.metrics import MetricsEmitter

T = TypeVar("T")

DEFAULT_DB_PATH = "./data/bucket.db"
SLUG_LENGTH = 8
ID_LENGTH = 21
DELETE_BATCH_SIZE = 500
_ID_ALPHABET = string.ascii_letters + string.digits + "_-"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS files (
    id TEXT PRIMARY KEY,
    filename TEXT NOT NULL,
    original_name TEXT NOT NULL,
    file_key TEXT NOT NULL UNIQUE,
    file_url TEXT NOT NULL,
    file_size INTEGER NOT NULL,
    mime_type TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    uploaded_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_files_uploaded_at ON files(uploaded_at);
"""


class FileRecordNotFoundError(BucketError):
    """No file record matched the requested id."""


def generate_id(length: int = ID_LENGTH) -> str:
    """URL-safe random identifier (same alphabet as nanoid)."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def generate_slug() -> str:
    return generate_id(SLUG_LENGTH)


@dataclass
class FileRecord:
    """Metadata for one uploaded file."""

    filename: str
    original_name: str
    file_key: str
    file_url: str
    file_size: int
    mime_type: str
    id: str = field(default_factory=generate_id)
    slug: str = field(default_factory=generate_slug)
    uploaded_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc).replace(microsecond=0)
    )

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "original_name": self.original_name,
            "file_key": self.file_key,
            "file_url": self.file_url,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "slug": self.slug,
            "uploaded_at": self.uploaded_at.isoformat(),
        }


class FileStore(BaseComponent):
    """SQLite-backed file metadata store.

    Writes are serialized with a lock; reads share the single connection.
    Every public query goes through with_retry() so transient SQLite errors
    ("database is locked", "database is busy") are retried with backoff.

    Usage:
        store = FileStore(db_path="bucket.db")
        await store.connect()
        record = await store.create_file(
            filename="cat.png",
            file_key="abc123",
            file_url="https://cdn.example/abc123",
            file_size=2048,
            mime_type="image/png",
        )
        same = await store.get_by_slug(record.slug)
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        config: Optional[ConfigManager] = None,
        monitor: Optional["DatabaseMonitor"] = None,
        metrics: Optional["MetricsEmitter"] = None,
        retry_options: OptionsLike = None,
        logger: Optional[ServerLogger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the file store.

        Args:
            db_path: Direct path to database file (takes precedence).
            config: Configuration manager for database.path.
            monitor: Database monitor receiving query/error counts.
            metrics: Optional Prometheus emitter for file operations.
            retry_options: Retry options applied to every query.
            logger: Logger for store and retry events.
            sleep: Backoff sleep passed to with_retry().
        """
        super().__init__(name="FileStore")
        if db_path:
            self._db_path = db_path
        elif config:
            self._db_path = config.get("database.path", DEFAULT_DB_PATH)
        else:
            self._db_path = DEFAULT_DB_PATH

        self._monitor = monitor
        self._metrics = metrics
        self._retry_options = retry_options
        self._log = logger or ServerLogger("bucket.file_store")
        self._sleep = sleep

        self._connection: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @property
    def connection_count(self) -> int:
        """Open connections (SQLite uses at most one)."""
        return 1 if self._connection is not None else 0

    @property
    def monitor(self) -> Optional["DatabaseMonitor"]:
        return self._monitor

    def attach_monitor(self, monitor: "DatabaseMonitor") -> None:
        """Set the monitor after construction (the monitor probes this store)."""
        self._monitor = monitor

    # ============ Connection ============

    async def connect(self) -> None:
        """Open the database and create the schema."""
        if self._connection is not None:
            return

        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        self._log.info("connecting_file_store", db_path=str(self._db_path))
        connection = await aiosqlite.connect(self._db_path)
        connection.row_factory = aiosqlite.Row
        await connection.execute("PRAGMA busy_timeout=5000")
        if self._db_path != ":memory:":
            await connection.execute("PRAGMA journal_mode=WAL")
        await connection.executescript(SCHEMA_SQL)
        await connection.commit()

        self._connection = connection
        self._log.info("file_store_connected")

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        self._log.info("file_store_closed")

    async def _do_start(self) -> None:
        await self.connect()

    async def _do_stop(self) -> None:
        await self.close()

    async def _do_health_check(self) -> HealthCheckResult:
        try:
            await self.ping()
        except Exception as e:
            return HealthCheckResult.unhealthy("File store probe failed", error=str(e))
        return HealthCheckResult.healthy(db_path=str(self._db_path))

    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("File store is not open")
        return self._connection

    async def ping(self) -> None:
        """Minimal read used as the health probe."""
        async with self._conn().execute("SELECT id FROM files LIMIT 1") as cursor:
            await cursor.fetchone()

    async def _run(self, operation_name: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_retry(
            operation,
            operation_name,
            self._retry_options,
            monitor=self._monitor,
            logger=self._log,
            sleep=self._sleep,
        )

    # ============ Writes ============

    async def create_file(
        self,
        filename: str,
        file_key: str,
        file_url: str,
        file_size: int,
        mime_type: str,
        original_name: Optional[str] = None,
    ) -> FileRecord:
        """Record a completed upload under a fresh slug."""
        record = FileRecord(
            filename=filename,
            original_name=original_name or filename,
            file_key=file_key,
            file_url=file_url,
            file_size=file_size,
            mime_type=mime_type,
        )

        async def insert(conn: aiosqlite.Connection) -> None:
            await conn.execute(
                """
                INSERT INTO files
                (id, filename, original_name, file_key, file_url,
                 file_size, mime_type, slug, uploaded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.filename,
                    record.original_name,
                    record.file_key,
                    record.file_url,
                    record.file_size,
                    record.mime_type,
                    record.slug,
                    int(record.uploaded_at.timestamp()),
                ),
            )

        await self._run("create_file", lambda: self._transaction(insert))
        self._record_operation("create")
        self._log.log_file_operation("created", record.id, record.filename, {"slug": record.slug})
        return record

    async def delete_file(self, file_id: str) -> FileRecord:
        """Delete one record.

        Raises:
            FileRecordNotFoundError: If no record has that id.
        """
        deleted = await self.delete_files([file_id])
        if not deleted:
            raise FileRecordNotFoundError(f"File not found: {file_id}")
        return deleted[0]

    async def delete_files(self, file_ids: Iterable[str]) -> list[FileRecord]:
        """Delete the records with the given ids, returning those that existed."""
        ids = list(dict.fromkeys(file_ids))
        if not ids:
            return []

        placeholders = ", ".join("?" for _ in ids)
        records = await self._run(
            "delete_files",
            lambda: self._delete_selected(f"SELECT * FROM files WHERE id IN ({placeholders})", ids),
        )
        for record in records:
            self._record_operation("delete")
            self._log.log_file_operation("deleted", record.id, record.filename)
        return records

    async def delete_all(self) -> list[FileRecord]:
        """Delete every record, returning exactly the rows that were removed.

        Rows inserted after the selection are left in place.
        """
        records = await self._run(
            "delete_all_files",
            lambda: self._delete_selected("SELECT * FROM files"),
        )
        if not records:
            return []

        self._record_operation("delete_all")
        self._log.info("all_files_deleted", deleted_count=len(records))
        return records

    # ============ Reads ============

    async def get_file(self, file_id: str) -> Optional[FileRecord]:
        return await self._run(
            "get_file",
            lambda: self._fetch_one("SELECT * FROM files WHERE id = ? LIMIT 1", (file_id,)),
        )

    async def get_by_slug(self, slug: str) -> Optional[FileRecord]:
        """Resolve a short-link slug."""
        return await self._run(
            "get_file_by_slug",
            lambda: self._fetch_one("SELECT * FROM files WHERE slug = ? LIMIT 1", (slug,)),
        )

    async def list_files(self, limit: int = 100, offset: int = 0) -> list[FileRecord]:
        """Files ordered newest first."""
        return await self._run(
            "list_files",
            lambda: self._fetch_all(
                "SELECT * FROM files ORDER BY uploaded_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ),
        )

    async def count_files(self) -> int:
        async def count() -> int:
            async with self._conn().execute("SELECT COUNT(*) AS n FROM files") as cursor:
                row = await cursor.fetchone()
            return int(row["n"]) if row else 0

        return await self._run("count_files", count)

    # ============ Helpers ============

    async def _fetch_one(self, query: str, params: Iterable[Any] = ()) -> Optional[FileRecord]:
        async with self._conn().execute(query, tuple(params)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    async def _fetch_all(self, query: str, params: Iterable[Any] = ()) -> list[FileRecord]:
        async with self._conn().execute(query, tuple(params)) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def _transaction(self, work: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        """Run work and commit under the write lock.

        Any failure, including a failed commit, rolls the transaction back
        before the error propagates so a retry starts from a clean connection.
        """
        async with self._write_lock:
            conn = self._conn()
            try:
                result = await work(conn)
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise
            return result

    async def _delete_selected(self, select_query: str, params: Iterable[Any] = ()) -> list[FileRecord]:
        """Select rows and delete exactly those ids in one transaction."""

        async def work(conn: aiosqlite.Connection) -> list[FileRecord]:
            async with conn.execute(select_query, tuple(params)) as cursor:
                rows = await cursor.fetchall()
            records = [self._row_to_record(row) for row in rows]
            ids = [r.id for r in records]
            for start in range(0, len(ids), DELETE_BATCH_SIZE):
                batch = ids[start:start + DELETE_BATCH_SIZE]
                placeholders = ", ".join("?" for _ in batch)
                await conn.execute(f"DELETE FROM files WHERE id IN ({placeholders})", batch)
            return records

        return await self._transaction(work)

    def _record_operation(self, operation: str) -> None:
        if self._metrics:
            self._metrics.record_file_operation(operation)

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> FileRecord:
        return FileRecord(
            id=row["id"],
            filename=row["filename"],
            original_name=row["original_name"],
            file_key=row["file_key"],
            file_url=row["file_url"],
            file_size=int(row["file_size"]),
            mime_type=row["mime_type"],
            slug=row["slug"],
            uploaded_at=datetime.fromtimestamp(row["uploaded_at"], tz=timezone.utc),
        )
