"""FastAPI dependency providers."""

from __future__ import annotations

import secrets
from typing import AsyncIterator

from fastapi import Header, Request

from reviewsync.config import get_settings
from reviewsync.drafts.pipeline import DraftPreparer
from reviewsync.kernel.errors import UnauthorizedError, ValidationError
from reviewsync.runtime import draft_preparer, sync_orchestrator
from reviewsync.sync.orchestrator import SyncOrchestrator


def _presented_secret(request: Request) -> str | None:
    for header in ("x-cron-secret", "x-cron-key"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    authorization = request.headers.get("authorization") or ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


async def require_cron_secret(request: Request) -> None:
    """Accept the shared secret from `x-cron-secret`, `x-cron-key` or a Bearer token."""
    expected = get_settings().cron_secret
    presented = _presented_secret(request)
    if not expected or not presented or not secrets.compare_digest(presented, expected):
        raise UnauthorizedError(message="Invalid cron secret")


async def get_orchestrator() -> AsyncIterator[SyncOrchestrator]:
    async with sync_orchestrator() as orchestrator:
        yield orchestrator


def get_draft_preparer() -> DraftPreparer:
    return draft_preparer()


async def require_tenant(x_tenant_id: str | None = Header(default=None)) -> str:
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise ValidationError(message="Missing x-tenant-id header")
    return tenant_id
