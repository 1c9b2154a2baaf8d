from __future__ import annotations

import html
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from inboxai.services.config import get_settings
from inboxai.services.errors import ProviderError
from inboxai.services.llm import ChatProvider, first_message, message_text, try_parse_json_object, usage_of
from inboxai.services.prompts import ANALYZE_EMAIL_PROMPT, GENERATE_REPLY_PROMPT
from inboxai.services.usage import UsageRecord, UsageTracker

logger = logging.getLogger(__name__)

MAX_TAGS = 3
TAG_MAX_CHARS = 12
SUMMARY_MAX_CHARS = 100
CLEANED_MAX_CHARS = 800

_STYLE_OR_SCRIPT = re.compile(r"<(style|script)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_BREAK = re.compile(r"<br\s*/?>|</p>|</div>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")
_BLANK_LINES = re.compile(r"\n\s*\n+")


def html_to_text(html_body: Optional[str]) -> str:
    if not html_body:
        return ""
    text = _STYLE_OR_SCRIPT.sub("", html_body)
    text = _BREAK.sub("\n", text)
    text = _TAG.sub("", text)
    text = html.unescape(text)
    return _BLANK_LINES.sub("\n\n", text).strip()


def email_body_text(email: dict[str, Any]) -> str:
    """Plain text body, falling back to the tag-stripped HTML body."""
    text = (email.get("text_body") or "").strip()
    if text:
        return text
    return html_to_text(email.get("html_body"))


@dataclass
class BasicAnalysis:
    summary: str
    tags: list[str] = field(default_factory=list)
    cleaned_body: Optional[str] = None


@dataclass
class ReplyDraft:
    subject: str
    body: str


class EmailAnalyzer:
    """Single-shot JSON calls on the fast model: summary/tags and reply drafts."""

    def __init__(self, provider: ChatProvider, usage: Optional[UsageTracker] = None, *, model: Optional[str] = None):
        self.provider = provider
        self.usage = usage
        self.model = model or get_settings().model_fast

    async def summarize(self, email: dict[str, Any], body: str) -> BasicAnalysis:
        user_content = (
            f"Von: {email.get('from_name') or ''} <{email.get('from_address') or ''}>\n"
            f"Betreff: {email.get('subject') or ''}\n\n"
            f"{body}"
        )
        data = await self._json_call(
            ANALYZE_EMAIL_PROMPT, user_content, feature="analyze-email", context=email.get("subject")
        )

        summary = str(data.get("summary") or "").strip()
        if not summary:
            raise ProviderError("Analysis JSON did not contain a summary")

        tags = [str(tag).strip()[:TAG_MAX_CHARS] for tag in data.get("tags") or [] if str(tag).strip()]
        cleaned = data.get("cleanedContent")
        return BasicAnalysis(
            summary=summary[:SUMMARY_MAX_CHARS],
            tags=tags[:MAX_TAGS],
            cleaned_body=str(cleaned)[:CLEANED_MAX_CHARS] if cleaned else None,
        )

    async def generate_reply(self, email: dict[str, Any], body: str, analysis: Optional[str] = None) -> ReplyDraft:
        user_content = (
            f"Erhaltene E-Mail von {email.get('from_name') or email.get('from_address') or 'Unbekannt'}\n"
            f"Betreff: {email.get('subject') or ''}\n\n"
            f"{body[:get_settings().body_prompt_chars]}"
        )
        if analysis:
            user_content += f"\n\nAnalyse des Support-Agenten:\n{analysis}"

        data = await self._json_call(
            GENERATE_REPLY_PROMPT, user_content, feature="generate-reply", context=email.get("subject")
        )
        reply_body = str(data.get("body") or "").strip()
        if not reply_body:
            raise ProviderError("Reply JSON did not contain a body")
        subject = str(data.get("subject") or "").strip() or f"Re: {email.get('subject') or ''}"
        return ReplyDraft(subject=subject, body=reply_body)

    async def _json_call(
        self, system_prompt: str, user_content: str, *, feature: str, context: Optional[str]
    ) -> dict[str, Any]:
        last_text = ""
        for attempt in range(1, 3):
            system = system_prompt
            if attempt == 2:
                system += "\n\nGib GENAU EIN gültiges JSON-Objekt zurück. Kein Markdown, kein Text davor oder danach."
            messages = [
                {"role": "system", "content": system},
                {"role": "user", "content": user_content},
            ]
            text = await self._complete(messages, feature=feature, context=context)
            parsed = try_parse_json_object(text)
            if parsed is not None:
                return parsed
            logger.warning("%s: attempt %d returned no JSON object", feature, attempt)
            last_text = text

        preview = last_text[:180].replace("\n", " ")
        raise ProviderError(f"{feature}: model output was not valid JSON (preview: {preview})")

    async def _complete(self, messages: list[dict[str, Any]], *, feature: str, context: Optional[str]) -> str:
        started = time.monotonic()
        record = UsageRecord(feature=feature, model=self.model, context=(context or "")[:200])
        try:
            response = await self.provider.complete(model=self.model, messages=messages)
            text = message_text(first_message(response).get("content"))
        except Exception as exc:
            record.success = False
            record.error_message = str(exc)
            record.duration_ms = int((time.monotonic() - started) * 1000)
            await self._track(record)
            raise

        usage = usage_of(response)
        record.prompt_tokens = usage.prompt_tokens
        record.completion_tokens = usage.completion_tokens
        record.total_tokens = usage.total_tokens
        record.duration_ms = int((time.monotonic() - started) * 1000)
        await self._track(record)
        return text

    async def _track(self, record: UsageRecord) -> None:
        if self.usage is None:
            return
        try:
            await self.usage.track(record)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Usage tracking failed: %s", exc)
