"""Draft preparation endpoints. The gateway supplies the tenant in `x-tenant-id`."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from reviewsync.api.deps import get_draft_preparer, require_tenant
from reviewsync.drafts.pipeline import DraftPreparer

router = APIRouter(prefix="/drafts", tags=["Drafts"])


class PrepareDraftsRequest(BaseModel):
    location_id: str = Field(..., min_length=1)
    limit: int | None = None
    cooldown_minutes: int | None = None
    lookback_days: int | None = None


class EnsureDraftRequest(BaseModel):
    review_id: int
    location_id: str | None = None


@router.post("/prepare")
async def prepare_drafts(
    payload: PrepareDraftsRequest,
    tenant_id: str = Depends(require_tenant),
    preparer: DraftPreparer = Depends(get_draft_preparer),
) -> dict[str, Any]:
    result = await preparer.prepare_drafts(
        tenant_id,
        payload.location_id.strip(),
        limit=payload.limit,
        cooldown_minutes=payload.cooldown_minutes,
        lookback_days=payload.lookback_days,
    )
    return result.to_dict()


@router.post("/ensure")
async def ensure_draft(
    payload: EnsureDraftRequest,
    tenant_id: str = Depends(require_tenant),
    preparer: DraftPreparer = Depends(get_draft_preparer),
) -> dict[str, Any]:
    location_id = payload.location_id.strip() if payload.location_id else None
    result = await preparer.ensure_draft(tenant_id, payload.review_id, location_id or None)
    return result.to_dict()
