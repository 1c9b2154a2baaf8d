from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from inboxai.dependencies import get_event_bus, get_repository

router = APIRouter(prefix="/api/emails", tags=["emails"])


class LockRequest(BaseModel):
    user_id: str
    user_name: Optional[str] = None


class UnlockRequest(BaseModel):
    user_id: str


# Registered before the /{email_id} routes.
@router.post("/unlock-all")
async def unlock_all(body: UnlockRequest) -> dict[str, Any]:
    count = await get_repository().unlock_all_for_user(body.user_id)
    if count:
        get_event_bus().publish({"type": "email-unlocked", "userId": body.user_id, "count": count})
    return {"unlocked": True, "count": count}


@router.get("/{email_id}")
async def get_email(email_id: str) -> dict[str, Any]:
    email = await get_repository().get_email(email_id)
    if email is None:
        raise HTTPException(status_code=404, detail="Unknown email")
    return dict(email)


@router.post("/{email_id}/lock")
async def lock_email(email_id: str, body: LockRequest) -> dict[str, Any]:
    repository = get_repository()
    if await repository.get_email(email_id) is None:
        raise HTTPException(status_code=404, detail="Unknown email")

    user_name = body.user_name or body.user_id
    result = await repository.lock_email(email_id, body.user_id, user_name)
    if result["locked"]:
        get_event_bus().publish(
            {"type": "email-locked", "emailId": email_id, "lockedBy": body.user_id, "lockedByName": user_name}
        )
    return result


@router.post("/{email_id}/unlock")
async def unlock_email(email_id: str, body: UnlockRequest) -> dict[str, bool]:
    released = await get_repository().unlock_email(email_id, body.user_id)
    if released:
        get_event_bus().publish({"type": "email-unlocked", "emailId": email_id, "userId": body.user_id})
    return {"unlocked": True}
