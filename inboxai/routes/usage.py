from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query

from inboxai.dependencies import get_usage_tracker

router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("/summary")
async def usage_summary(days: int = Query(default=30, ge=1, le=365)) -> dict[str, Any]:
    return await get_usage_tracker().summary(days)
