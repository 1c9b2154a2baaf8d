from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from inboxai.services.database import connect_db, fetchall

logger = logging.getLogger(__name__)

# USD per 1M tokens
MODEL_PRICING: dict[str, dict[str, float]] = {
    "gpt-5.2": {"input": 1.75, "output": 14.00},
    "gpt-5": {"input": 1.25, "output": 10.00},
    "gpt-5-mini": {"input": 0.25, "output": 2.00},
    "gpt-4.1": {"input": 2.00, "output": 8.00},
    "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
}


def utc_now() -> str:
    return datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    pricing = MODEL_PRICING.get(model, MODEL_PRICING["gpt-4o-mini"])
    input_cost = (prompt_tokens / 1_000_000) * pricing["input"]
    output_cost = (completion_tokens / 1_000_000) * pricing["output"]
    return round(input_cost + output_cost, 6)


@dataclass
class UsageRecord:
    feature: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    duration_ms: Optional[int] = None
    success: bool = True
    error_message: Optional[str] = None
    context: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None


class UsageTracker:
    """Records every chat completion in ``ai_usage``. Never raises from ``track``."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = db_path

    async def track(self, record: UsageRecord) -> Optional[int]:
        try:
            cost = estimate_cost(record.model, record.prompt_tokens, record.completion_tokens)
            conn = await connect_db(self.db_path)
            try:
                cursor = await conn.execute(
                    """
                    INSERT INTO ai_usage (
                        feature, model, user_id, user_email, prompt_tokens, completion_tokens,
                        total_tokens, cost_usd, duration_ms, success, error_message, context, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.feature,
                        record.model,
                        record.user_id,
                        record.user_email,
                        record.prompt_tokens,
                        record.completion_tokens,
                        record.total_tokens,
                        cost,
                        record.duration_ms,
                        1 if record.success else 0,
                        (record.error_message or "")[:1000] or None,
                        (record.context or "")[:500] or None,
                        utc_now(),
                    ),
                )
                await conn.commit()
                return cursor.lastrowid
            finally:
                await conn.close()
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to track AI usage: %s", exc)
            return None

    async def summary(self, days: int = 30) -> dict[str, Any]:
        since = (datetime.utcnow() - timedelta(days=days)).replace(microsecond=0).isoformat() + "Z"
        conn = await connect_db(self.db_path)
        try:
            rows = await fetchall(
                conn,
                """
                SELECT feature,
                       COUNT(*) AS calls,
                       SUM(total_tokens) AS tokens,
                       ROUND(SUM(cost_usd), 6) AS cost_usd,
                       SUM(CASE WHEN success = 0 THEN 1 ELSE 0 END) AS failures
                FROM ai_usage
                WHERE created_at >= ?
                GROUP BY feature
                ORDER BY feature
                """,
                (since,),
            )
        finally:
            await conn.close()

        features = [dict(row) for row in rows]
        return {
            "days": days,
            "calls": sum(row["calls"] for row in features),
            "cost_usd": round(sum(row["cost_usd"] or 0 for row in features), 6),
            "features": features,
        }
