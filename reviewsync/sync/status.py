"""
Per-location lifecycle records (`sync_status`).

Each (tenant, location, kind) row is a versioned record whose `status` moves
idle -> running -> done|error. Writers derive the next record through
`StatusRecord.transition`, which rejects illegal moves, and the store only
accepts a write whose version is newer than what it holds.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable

import structlog
from sqlalchemy import text

from reviewsync.db.client import get_db_session
from reviewsync.kernel.time import utc_now

logger = structlog.get_logger()


class Lifecycle(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class StatusKind(str, Enum):
    IMPORT = "import"
    AI = "ai"


_ALLOWED: dict[Lifecycle, frozenset[Lifecycle]] = {
    Lifecycle.IDLE: frozenset({Lifecycle.RUNNING}),
    Lifecycle.RUNNING: frozenset({Lifecycle.RUNNING, Lifecycle.DONE, Lifecycle.ERROR}),
    Lifecycle.DONE: frozenset({Lifecycle.RUNNING}),
    Lifecycle.ERROR: frozenset({Lifecycle.RUNNING}),
}


class IllegalTransition(ValueError):
    pass


@dataclass(frozen=True)
class StatusRecord:
    tenant_id: str
    location_id: str
    kind: StatusKind = StatusKind.IMPORT
    status: Lifecycle = Lifecycle.IDLE
    version: int = 0
    last_run_at: datetime | None = None
    scanned: int = 0
    upserted: int = 0
    errors_count: int = 0
    last_error: str | None = None
    aborted: bool = False
    pages_exhausted: bool = False

    def transition(self, to: Lifecycle, **changes) -> "StatusRecord":
        if to not in _ALLOWED[self.status]:
            raise IllegalTransition(f"{self.status.value} -> {to.value}")
        return replace(self, status=to, version=self.version + 1, **changes)


class StatusStore(ABC):
    @abstractmethod
    async def get(self, tenant_id: str, location_id: str, kind: StatusKind = StatusKind.IMPORT) -> StatusRecord | None:
        pass

    @abstractmethod
    async def put(self, record: StatusRecord) -> bool:
        """Write `record` if it is newer than the stored version. Returns False if stale."""
        pass


class PostgresStatusStore(StatusStore):
    async def get(self, tenant_id: str, location_id: str, kind: StatusKind = StatusKind.IMPORT) -> StatusRecord | None:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT tenant_id, location_id, kind, status, version, last_run_at,
                           scanned, upserted, errors_count, last_error, aborted, pages_exhausted
                    FROM sync_status
                    WHERE tenant_id = :tenant_id AND location_id = :location_id AND kind = :kind
                    """
                ),
                {"tenant_id": tenant_id, "location_id": location_id, "kind": kind.value},
            )
            row = result.mappings().first()
        if not row:
            return None
        return StatusRecord(
            tenant_id=row["tenant_id"],
            location_id=row["location_id"],
            kind=StatusKind(row["kind"]),
            status=Lifecycle(row["status"]),
            version=int(row["version"] or 0),
            last_run_at=row["last_run_at"],
            scanned=int(row["scanned"] or 0),
            upserted=int(row["upserted"] or 0),
            errors_count=int(row["errors_count"] or 0),
            last_error=row["last_error"],
            aborted=bool(row["aborted"]),
            pages_exhausted=bool(row["pages_exhausted"]),
        )

    async def put(self, record: StatusRecord) -> bool:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    INSERT INTO sync_status (
                        tenant_id, location_id, kind, status, version, last_run_at,
                        scanned, upserted, errors_count, last_error, aborted, pages_exhausted,
                        updated_at
                    ) VALUES (
                        :tenant_id, :location_id, :kind, :status, :version, :last_run_at,
                        :scanned, :upserted, :errors_count, :last_error, :aborted, :pages_exhausted,
                        NOW()
                    )
                    ON CONFLICT (tenant_id, location_id, kind) DO UPDATE SET
                        status = EXCLUDED.status,
                        version = EXCLUDED.version,
                        last_run_at = EXCLUDED.last_run_at,
                        scanned = EXCLUDED.scanned,
                        upserted = EXCLUDED.upserted,
                        errors_count = EXCLUDED.errors_count,
                        last_error = EXCLUDED.last_error,
                        aborted = EXCLUDED.aborted,
                        pages_exhausted = EXCLUDED.pages_exhausted,
                        updated_at = NOW()
                    WHERE sync_status.version < EXCLUDED.version
                    """
                ),
                {
                    "tenant_id": record.tenant_id,
                    "location_id": record.location_id,
                    "kind": record.kind.value,
                    "status": record.status.value,
                    "version": record.version,
                    "last_run_at": record.last_run_at,
                    "scanned": record.scanned,
                    "upserted": record.upserted,
                    "errors_count": record.errors_count,
                    "last_error": record.last_error,
                    "aborted": record.aborted,
                    "pages_exhausted": record.pages_exhausted,
                },
            )
        return result.rowcount > 0


class LocationStatusTracker:
    """Drives one location's import or AI record through a single invocation.

    `start` opens the run, `record_page` bumps counters after each non-empty
    page, and exactly one of `finish_done` / `finish_error` closes it. A run cut
    short by the budget calls `mark_aborted` and stays `running`.
    """

    def __init__(
        self,
        store: StatusStore,
        tenant_id: str,
        location_id: str,
        *,
        kind: StatusKind = StatusKind.IMPORT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.tenant_id = tenant_id
        self.location_id = location_id
        self.kind = kind
        self._clock = clock
        self._record: StatusRecord | None = None
        self._closed = False

    @property
    def record(self) -> StatusRecord | None:
        return self._record

    async def _write(self, record: StatusRecord) -> None:
        self._record = record
        if not await self.store.put(record):
            logger.debug(
                "Stale status write ignored",
                tenant_id=self.tenant_id,
                location_id=self.location_id,
                version=record.version,
            )

    async def start(self) -> None:
        current = await self.store.get(self.tenant_id, self.location_id, self.kind)
        base = current or StatusRecord(tenant_id=self.tenant_id, location_id=self.location_id, kind=self.kind)
        await self._write(
            base.transition(
                Lifecycle.RUNNING,
                last_run_at=self._clock(),
                scanned=0,
                upserted=0,
                errors_count=0,
                last_error=None,
                aborted=False,
                pages_exhausted=False,
            )
        )

    async def record_page(self, *, scanned: int, upserted: int) -> None:
        if self._record is None or self._closed or scanned <= 0:
            return
        await self._write(
            self._record.transition(
                Lifecycle.RUNNING,
                scanned=self._record.scanned + scanned,
                upserted=self._record.upserted + upserted,
            )
        )

    async def mark_aborted(self) -> None:
        if self._record is None or self._closed:
            return
        self._closed = True
        await self._write(self._record.transition(Lifecycle.RUNNING, aborted=True))

    async def finish_done(self) -> None:
        if self._record is None or self._closed:
            return
        self._closed = True
        await self._write(
            self._record.transition(Lifecycle.DONE, pages_exhausted=True, last_run_at=self._clock())
        )

    async def finish_error(self, message: str) -> None:
        if self._record is None or self._closed:
            return
        self._closed = True
        # Counters are kept so dashboards still show partial progress.
        await self._write(
            self._record.transition(
                Lifecycle.ERROR,
                errors_count=self._record.errors_count + 1,
                last_error=message,
                last_run_at=self._clock(),
            )
        )
