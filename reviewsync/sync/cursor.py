"""
Sweep cursor.

The cursor is an immutable value: the orchestrator receives one at the start of
a run, derives new ones as pages and locations complete, and hands them to the
store at checkpoints. Nothing mutates a cursor in place.

Shape:
- `location_cursor`: id of the last location the sweep finished (or skipped on
  error). The next sweep starts strictly after it, and wraps to the first
  location once nothing is left after it.
- `page_token` / `page_location_id`: resume point inside a partially processed
  location. A token is only honoured for the location it was issued for.
- `errors_count`: per-location failures seen by the last run.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

import structlog

from reviewsync.sync.cron_state import CronStateStore

logger = structlog.get_logger()

CURSOR_KEY = "sync_replies_cursor_v1"


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class SyncCursor:
    location_cursor: int | None = None
    page_token: str | None = None
    page_location_id: int | None = None
    errors_count: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncCursor":
        data = data or {}
        token = data.get("page_token")
        return cls(
            location_cursor=_as_int(data.get("location_cursor")),
            page_token=token if isinstance(token, str) and token else None,
            page_location_id=_as_int(data.get("page_location_id")),
            errors_count=_as_int(data.get("errors_count")) or 0,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "location_cursor": self.location_cursor,
            "page_token": self.page_token,
            "page_location_id": self.page_location_id,
            "errors_count": self.errors_count,
        }

    def resume_token_for(self, location_id: int) -> str | None:
        if self.page_token and self.page_location_id == location_id:
            return self.page_token
        return None

    def with_page(self, location_id: int, page_token: str) -> "SyncCursor":
        """A page of `location_id` finished and more pages remain."""
        return replace(self, page_token=page_token, page_location_id=location_id)

    def complete_location(self, location_id: int) -> "SyncCursor":
        """The location is finished (or skipped on error); never moves backwards."""
        current = self.location_cursor
        advanced = location_id if current is None else max(current, location_id)
        return replace(self, location_cursor=advanced, page_token=None, page_location_id=None)

    def with_errors(self, errors_count: int) -> "SyncCursor":
        return replace(self, errors_count=max(0, int(errors_count)))

    def restart(self) -> "SyncCursor":
        """Begin a new pass from the first location."""
        return SyncCursor(errors_count=self.errors_count)


class CursorStore:
    """Persists a `SyncCursor` under one `cron_state` key."""

    def __init__(self, state: CronStateStore, *, key: str = CURSOR_KEY) -> None:
        self.state = state
        self.key = key

    async def load(self) -> SyncCursor:
        return SyncCursor.from_dict(await self.state.get(self.key))

    async def save(self, cursor: SyncCursor) -> None:
        await self.state.put(self.key, cursor.to_dict())
        logger.debug("Sync cursor saved", key=self.key, **cursor.to_dict())
