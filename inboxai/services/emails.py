from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, TypedDict

from inboxai.services.config import get_settings
from inboxai.services.database import connect_db, fetchall, fetchone

logger = logging.getLogger(__name__)

JSON_COLUMNS = {"attachments", "ai_tags", "agent_key_facts"}

AI_COLUMNS = (
    "ai_summary",
    "ai_tags",
    "cleaned_body",
    "ai_processing",
    "ai_processed_at",
    "agent_analysis",
    "agent_key_facts",
    "suggested_reply",
    "suggested_reply_subject",
    "customer_phone",
)


class EmailItem(TypedDict, total=False):
    id: str
    message_id: Optional[str]
    subject: Optional[str]
    from_address: Optional[str]
    from_name: Optional[str]
    text_body: Optional[str]
    html_body: Optional[str]
    attachments: list[dict[str, Any]]
    status: str
    received_at: Optional[str]
    ai_summary: Optional[str]
    ai_tags: Optional[list[str]]
    cleaned_body: Optional[str]
    ai_processing: bool
    ai_processed_at: Optional[str]
    agent_analysis: Optional[str]
    agent_key_facts: Optional[list[dict[str, str]]]
    suggested_reply: Optional[str]
    suggested_reply_subject: Optional[str]
    customer_phone: Optional[str]
    locked_by: Optional[str]
    locked_by_name: Optional[str]
    locked_at: Optional[str]


_RESET_SQL = """
    ai_summary = NULL, ai_tags = NULL, cleaned_body = NULL, ai_processing = 0,
    ai_processed_at = NULL, agent_analysis = NULL, agent_key_facts = NULL,
    suggested_reply = NULL, suggested_reply_subject = NULL, customer_phone = NULL
"""


def utc_now() -> str:
    return datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value.rstrip("Z"))


def _decode(row: Any) -> EmailItem:
    email: EmailItem = dict(row)  # type: ignore[assignment]
    for column in JSON_COLUMNS:
        raw = email.get(column)
        if isinstance(raw, str):
            try:
                email[column] = json.loads(raw)
            except json.JSONDecodeError:
                email[column] = None
    if "ai_processing" in email:
        email["ai_processing"] = bool(email["ai_processing"])
    return email


def _encode(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and value is not None:
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bool):
        return 1 if value else 0
    return value


class EmailRepository:
    """Email rows and their AI-derived fields."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = db_path

    async def get_email(self, email_id: str) -> Optional[EmailItem]:
        conn = await connect_db(self.db_path)
        try:
            row = await fetchone(conn, "SELECT * FROM emails WHERE id = ?", (email_id,))
            return _decode(row) if row else None
        finally:
            await conn.close()

    async def get_unprocessed(self, limit: int = 100) -> list[EmailItem]:
        conn = await connect_db(self.db_path)
        try:
            rows = await fetchall(
                conn,
                """
                SELECT * FROM emails
                WHERE status = 'inbox' AND ai_processed_at IS NULL AND ai_processing = 0
                ORDER BY received_at DESC
                LIMIT ?
                """,
                (limit,),
            )
            return [_decode(row) for row in rows]
        finally:
            await conn.close()

    async def reset_ai_fields(self, email_id: str) -> None:
        conn = await connect_db(self.db_path)
        try:
            await conn.execute(f"UPDATE emails SET {_RESET_SQL} WHERE id = ?", (email_id,))
            await conn.commit()
        finally:
            await conn.close()

    async def reset_all_ai_fields(self) -> int:
        conn = await connect_db(self.db_path)
        try:
            cursor = await conn.execute(f"UPDATE emails SET {_RESET_SQL} WHERE status = 'inbox'")
            await conn.commit()
            logger.warning("Cleared AI data from %d inbox emails", cursor.rowcount)
            return cursor.rowcount
        finally:
            await conn.close()

    async def update_ai_fields(self, email_id: str, **fields: Any) -> None:
        unknown = set(fields) - set(AI_COLUMNS)
        if unknown:
            raise ValueError(f"Not an AI field: {', '.join(sorted(unknown))}")
        if not fields:
            return

        assignments = ", ".join(f"{column} = ?" for column in fields)
        params = tuple(_encode(column, value) for column, value in fields.items())
        conn = await connect_db(self.db_path)
        try:
            await conn.execute(f"UPDATE emails SET {assignments} WHERE id = ?", (*params, email_id))
            await conn.commit()
        finally:
            await conn.close()

    async def mark_processing(self, email_id: str, processing: bool) -> None:
        await self.update_ai_fields(email_id, ai_processing=processing)

    async def trimmed_view(self, email_id: str) -> Optional[dict[str, Any]]:
        email = await self.get_email(email_id)
        if email is None:
            return None
        return {
            "id": email["id"],
            "aiSummary": email["ai_summary"],
            "aiTags": email["ai_tags"],
            "cleanedBody": email["cleaned_body"],
            "agentAnalysis": email["agent_analysis"],
            "agentKeyFacts": email["agent_key_facts"],
            "suggestedReply": email["suggested_reply"],
            "customerPhone": email["customer_phone"],
        }

    async def ai_status_counts(self) -> dict[str, int]:
        conn = await connect_db(self.db_path)
        try:
            row = await fetchone(
                conn,
                """
                SELECT
                    SUM(CASE WHEN status = 'inbox' THEN 1 ELSE 0 END) AS total,
                    SUM(CASE WHEN status = 'inbox' AND ai_processed_at IS NOT NULL THEN 1 ELSE 0 END) AS processed,
                    SUM(CASE WHEN ai_processing = 1 THEN 1 ELSE 0 END) AS processing
                FROM emails
                """,
            )
        finally:
            await conn.close()

        total = row["total"] or 0
        processed = row["processed"] or 0
        processing = row["processing"] or 0
        return {
            "total": total,
            "processed": processed,
            "processing": processing,
            "pending": total - processed - processing,
        }

    # Editing locks: advisory, never blocking. An expired lock is simply taken over.

    async def lock_email(self, email_id: str, user_id: str, user_name: str) -> dict[str, Any]:
        email = await self.get_email(email_id)
        if email is None:
            return {"locked": False}

        conn = await connect_db(self.db_path)
        try:
            if email["locked_by"] == user_id:
                await conn.execute("UPDATE emails SET locked_at = ? WHERE id = ?", (utc_now(), email_id))
                await conn.commit()
                return {"locked": True}

            if email["locked_by"] and email["locked_at"]:
                ttl = timedelta(minutes=get_settings().lock_timeout_minutes)
                if datetime.utcnow() - _parse_ts(email["locked_at"]) < ttl:
                    return {
                        "locked": False,
                        "lockedBy": email["locked_by"],
                        "lockedByName": email["locked_by_name"],
                    }
                logger.info("Lock on %s by %s expired, taken over by %s", email_id, email["locked_by"], user_id)

            await conn.execute(
                "UPDATE emails SET locked_by = ?, locked_by_name = ?, locked_at = ? WHERE id = ?",
                (user_id, user_name, utc_now(), email_id),
            )
            await conn.commit()
            return {"locked": True}
        finally:
            await conn.close()

    async def unlock_email(self, email_id: str, user_id: str) -> bool:
        email = await self.get_email(email_id)
        if email is None:
            return False
        if email["locked_by"] not in (None, user_id):
            return False

        conn = await connect_db(self.db_path)
        try:
            await conn.execute(
                "UPDATE emails SET locked_by = NULL, locked_by_name = NULL, locked_at = NULL WHERE id = ?",
                (email_id,),
            )
            await conn.commit()
            return True
        finally:
            await conn.close()

    async def unlock_all_for_user(self, user_id: str) -> int:
        conn = await connect_db(self.db_path)
        try:
            cursor = await conn.execute(
                "UPDATE emails SET locked_by = NULL, locked_by_name = NULL, locked_at = NULL WHERE locked_by = ?",
                (user_id,),
            )
            await conn.commit()
            return cursor.rowcount
        finally:
            await conn.close()
