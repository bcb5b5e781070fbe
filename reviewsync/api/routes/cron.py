"""
Cron trigger for the sync orchestrator.

GET is an authorized healthcheck that runs nothing; POST runs one invocation.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Body, Depends, Query, Request
from pydantic import BaseModel, Field

from reviewsync.api.deps import get_orchestrator, require_cron_secret
from reviewsync.api.errors import get_request_id
from reviewsync.sync.orchestrator import RunOptions, SyncOrchestrator

logger = structlog.get_logger()

router = APIRouter(prefix="/cron", tags=["Cron"], dependencies=[Depends(require_cron_secret)])


class CronRunRequest(BaseModel):
    force: bool = False
    dry_run: bool = False
    tenant_id: str | None = Field(default=None, min_length=1)
    cursor: int | None = Field(default=None, ge=0, description="Start the sweep after this location id")


@router.get("/sync")
async def cron_healthcheck(request: Request) -> dict[str, Any]:
    return {"ok": True, "request_id": get_request_id(request), "mode": "healthcheck"}


@router.post("/sync")
async def cron_sync(
    request: Request,
    body: CronRunRequest | None = Body(default=None),
    force: bool | None = Query(default=None),
    dry_run: bool | None = Query(default=None),
    tenant_id: str | None = Query(default=None),
    cursor: int | None = Query(default=None, ge=0),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    body = body or CronRunRequest()
    options = RunOptions(
        force=body.force if force is None else force,
        dry_run=body.dry_run if dry_run is None else dry_run,
        tenant_id=tenant_id or body.tenant_id,
        cursor=body.cursor if cursor is None else cursor,
    )
    logger.info(
        "Cron sync requested",
        force=options.force,
        dry_run=options.dry_run,
        tenant_id=options.tenant_id,
        cursor=options.cursor,
    )
    report = await orchestrator.run(options, request_id=get_request_id(request))
    return report.to_dict()
