"""
Audit Recorder

Persists the quote request audit trail and per-provider counters in SQLite.
"""

import asyncio
import json
import math
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiosqlite

from quotehub.core.error_handler import AuditError
from quotehub.core.logger import get_logger
from quotehub.modules.quote.models import ExternalQuoteRequest, ProviderStats, RequestStatus

ABANDONED_MESSAGE = "abandoned: no terminal write"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS external_quote_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        request_id TEXT NOT NULL UNIQUE,
        user_id TEXT,
        request_data TEXT NOT NULL,
        response_data TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        providers_requested TEXT NOT NULL,
        providers_responded TEXT NOT NULL DEFAULT '[]',
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_quote_requests_status_updated
    ON external_quote_requests(status, updated_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_quote_requests_created
    ON external_quote_requests(created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS provider_stats (
        provider_id TEXT PRIMARY KEY,
        successful_requests INTEGER NOT NULL DEFAULT 0,
        failed_requests INTEGER NOT NULL DEFAULT 0,
        total_requests INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stamp(moment: datetime) -> str:
    # fixed width so that string comparison orders by time
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _row_to_request(row: sqlite3.Row) -> ExternalQuoteRequest:
    return ExternalQuoteRequest(
        id=row["id"],
        request_id=row["request_id"],
        user_id=row["user_id"],
        request_data=json.loads(row["request_data"]),
        response_data=json.loads(row["response_data"]) if row["response_data"] is not None else None,
        status=RequestStatus(row["status"]),
        providers_requested=json.loads(row["providers_requested"]),
        providers_responded=json.loads(row["providers_responded"]),
        error_message=row["error_message"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_stats(row: sqlite3.Row) -> ProviderStats:
    return ProviderStats(
        provider_id=row["provider_id"],
        successful_requests=row["successful_requests"],
        failed_requests=row["failed_requests"],
        total_requests=row["total_requests"],
        updated_at=row["updated_at"],
    )


class AuditRecorder:
    """
    Quote audit store

    One pending row per dispatched request, one terminal write per row,
    and atomic counters per provider.
    """

    def __init__(self, db_path: str = "data/quotehub.db", timeout: int = 30,
                 now: Callable[[], datetime] = _utcnow):
        """
        Create the store and its schema

        Args:
            db_path: sqlite file path
            timeout: sqlite busy timeout (s)
            now: wall clock, injectable for tests
        """
        self.logger = get_logger()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self._db_timeout = int(timeout)
        self._now = now
        self._write_lock = asyncio.Lock()
        self._init_db_sync()

    @classmethod
    def from_config(cls, config) -> "AuditRecorder":
        database = config.database
        return cls(db_path=database.get("path", "data/quotehub.db"), timeout=database.get("timeout", 30))

    def _init_db_sync(self) -> None:
        """Create tables synchronously so the store is usable right after construction"""
        with sqlite3.connect(self.db_path, timeout=self._db_timeout) as db:
            for statement in _SCHEMA:
                db.execute(statement)
            db.commit()
        self.logger.debug(f"Audit database ready: {self.db_path}")

    def _connect(self) -> aiosqlite.Connection:
        return aiosqlite.connect(self.db_path, timeout=self._db_timeout)

    async def create_pending(self, request: ExternalQuoteRequest) -> ExternalQuoteRequest:
        """
        Write the pending row for a dispatched request

        Args:
            request: request in pending state

        Returns:
            The same request with id and timestamps filled

        Raises:
            AuditError: the request id already exists or the write failed
        """
        stamp = _stamp(self._now())
        try:
            async with self._write_lock:
                async with self._connect() as db:
                    cursor = await db.execute("""
                        INSERT INTO external_quote_requests
                        (request_id, user_id, request_data, status, providers_requested,
                         providers_responded, created_at, updated_at)
                        VALUES (?, ?, ?, 'pending', ?, '[]', ?, ?)
                    """, (
                        request.request_id,
                        request.user_id,
                        json.dumps(request.request_data, ensure_ascii=False, default=str),
                        json.dumps(list(request.providers_requested)),
                        stamp,
                        stamp,
                    ))
                    await db.commit()
                    request.id = cursor.lastrowid
        except sqlite3.Error as exc:
            self.logger.error(f"Failed to write pending row {request.request_id}: {exc}")
            raise AuditError(f"Failed to write pending row: {exc}", {"request_id": request.request_id}) from exc

        request.status = RequestStatus.PENDING
        request.created_at = stamp
        request.updated_at = stamp
        return request

    async def finalize(self, request_id: str, status: RequestStatus,
                       response_data: Optional[List[Dict[str, Any]]] = None,
                       providers_responded: Optional[List[str]] = None,
                       error_message: Optional[str] = None) -> None:
        """
        Terminal write; only a pending row can be finalized

        Raises:
            AuditError: unknown request, row already terminal, or write failure
        """
        status = RequestStatus(status)
        if status == RequestStatus.PENDING:
            raise AuditError("Terminal status required", {"request_id": request_id})

        try:
            async with self._write_lock:
                async with self._connect() as db:
                    cursor = await db.execute("""
                        UPDATE external_quote_requests
                        SET status = ?, response_data = ?, providers_responded = ?,
                            error_message = ?, updated_at = ?
                        WHERE request_id = ? AND status = 'pending'
                    """, (
                        status.value,
                        json.dumps(response_data, ensure_ascii=False, default=str) if response_data is not None else None,
                        json.dumps(list(providers_responded or [])),
                        error_message,
                        _stamp(self._now()),
                        request_id,
                    ))
                    await db.commit()
                    updated = cursor.rowcount
        except sqlite3.Error as exc:
            self.logger.error(f"Failed to finalize {request_id}: {exc}")
            raise AuditError(f"Failed to finalize request: {exc}", {"request_id": request_id}) from exc

        if updated == 0:
            existing = await self.get_request(request_id)
            if existing is None:
                raise AuditError(f"Unknown request: {request_id}", {"request_id": request_id})
            raise AuditError(
                f"Request {request_id} is already {existing.status.value}",
                {"request_id": request_id, "status": existing.status.value},
            )

    async def record_provider_outcome(self, provider_id: str, success: bool) -> None:
        """Increment one provider counter in a single atomic statement"""
        ok = 1 if success else 0
        try:
            async with self._write_lock:
                async with self._connect() as db:
                    await db.execute("""
                        INSERT INTO provider_stats
                        (provider_id, successful_requests, failed_requests, total_requests, updated_at)
                        VALUES (?, ?, ?, 1, ?)
                        ON CONFLICT(provider_id) DO UPDATE SET
                            successful_requests = successful_requests + excluded.successful_requests,
                            failed_requests = failed_requests + excluded.failed_requests,
                            total_requests = total_requests + 1,
                            updated_at = excluded.updated_at
                    """, (provider_id, ok, 1 - ok, _stamp(self._now())))
                    await db.commit()
        except sqlite3.Error as exc:
            self.logger.error(f"Failed to record outcome for {provider_id}: {exc}")
            raise AuditError(f"Failed to record provider outcome: {exc}", {"provider_id": provider_id}) from exc

    async def get_request(self, request_id: str) -> Optional[ExternalQuoteRequest]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM external_quote_requests WHERE request_id = ?", (request_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_request(row) if row else None

    async def count_requests(self, status: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) FROM external_quote_requests"
        params: tuple = ()
        if status:
            query += " WHERE status = ?"
            params = (RequestStatus(status).value,)
        async with self._connect() as db:
            async with db.execute(query, params) as cursor:
                row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def list_requests(self, page: int = 1, limit: int = 20,
                            status: Optional[str] = None) -> Dict[str, Any]:
        """
        Paginated listing, newest first

        Args:
            page: 1-based page number
            limit: page size, capped at 100
            status: optional status filter

        Returns:
            {"requests": [ExternalQuoteRequest], "pagination": {...}}
        """
        page = max(1, int(page))
        limit = min(100, max(1, int(limit)))
        total = await self.count_requests(status)

        query = "SELECT * FROM external_quote_requests"
        params: List[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(RequestStatus(status).value)
        query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, (page - 1) * limit])

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()

        return {
            "requests": [_row_to_request(row) for row in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": math.ceil(total / limit) if total else 0,
            },
        }

    async def get_stats(self) -> List[ProviderStats]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM provider_stats ORDER BY provider_id") as cursor:
                rows = await cursor.fetchall()
        return [_row_to_stats(row) for row in rows]

    async def get_provider_stats(self, provider_id: str) -> ProviderStats:
        """Counters for one provider; zeros when it was never invoked"""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM provider_stats WHERE provider_id = ?", (provider_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return _row_to_stats(row) if row else ProviderStats(provider_id=provider_id)

    def _cutoff(self, older_than_seconds: float) -> str:
        return _stamp(self._now() - timedelta(seconds=float(older_than_seconds)))

    async def list_stuck_requests(self, older_than_seconds: float) -> List[ExternalQuoteRequest]:
        """Pending rows whose last write is older than the threshold"""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("""
                SELECT * FROM external_quote_requests
                WHERE status = 'pending' AND updated_at < ?
                ORDER BY updated_at
            """, (self._cutoff(older_than_seconds),)) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_request(row) for row in rows]

    async def reconcile_stuck_requests(self, older_than_seconds: float) -> List[str]:
        """
        Move stuck pending rows to error

        Returns:
            request ids that were reconciled
        """
        cutoff = self._cutoff(older_than_seconds)
        async with self._write_lock:
            async with self._connect() as db:
                async with db.execute("""
                    SELECT request_id FROM external_quote_requests
                    WHERE status = 'pending' AND updated_at < ?
                """, (cutoff,)) as cursor:
                    ids = [row[0] for row in await cursor.fetchall()]
                if ids:
                    await db.executemany("""
                        UPDATE external_quote_requests
                        SET status = 'error', error_message = ?, updated_at = ?
                        WHERE request_id = ? AND status = 'pending'
                    """, [(ABANDONED_MESSAGE, _stamp(self._now()), rid) for rid in ids])
                    await db.commit()
        for rid in ids:
            self.logger.warning(f"Reconciled stuck request {rid}: {ABANDONED_MESSAGE}")
        return ids
