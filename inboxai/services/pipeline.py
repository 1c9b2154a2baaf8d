from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from inboxai.services.agent import AgentStep, EmailAgent
from inboxai.services.analysis import EmailAnalyzer, email_body_text
from inboxai.services.config import get_settings
from inboxai.services.emails import EmailItem, EmailRepository, utc_now
from inboxai.services.errors import PipelineError
from inboxai.services.facts import parse_analysis, strip_json_block
from inboxai.services.prompts import EmailPromptData, describe_attachments, detect_inline_images

logger = logging.getLogger(__name__)

EMPTY_BODY_SUMMARY = "Kein E-Mail-Inhalt vorhanden"
ANALYSIS_FAILED_PREFIX = "Analyse fehlgeschlagen"
UNEXPECTED_ERROR_PREFIX = "Fehler:"
REPLY_CONTEXT_CHARS = 2000


def summary_is_usable(summary: Optional[str]) -> bool:
    if not summary:
        return False
    return not (summary.startswith(ANALYSIS_FAILED_PREFIX) or summary.startswith(UNEXPECTED_ERROR_PREFIX))


class EmailPipeline:
    """Summary, agent analysis, facts and reply draft for one email."""

    def __init__(
        self,
        repository: EmailRepository,
        analyzer: EmailAnalyzer,
        agent: EmailAgent,
        *,
        precompute_reply: Optional[bool] = None,
    ) -> None:
        self.repository = repository
        self.analyzer = analyzer
        self.agent = agent
        self.precompute_reply = get_settings().precompute_reply if precompute_reply is None else precompute_reply

    async def process(self, item_id: str, on_step: Callable[[AgentStep], None]) -> dict[str, Any]:
        """Run every stage for ``item_id`` and return its trimmed AI view.

        Failures inside a stage end up in the stored summary, so the caller
        only sees an exception when the email does not exist or the database
        itself is unavailable.
        """
        email = await self.repository.get_email(item_id)
        if email is None:
            raise PipelineError(f"Email {item_id} not found")

        await self.repository.mark_processing(item_id, True)
        try:
            await self._run_stages(email, on_step)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Processing failed for email %s", item_id)
            await self.repository.update_ai_fields(
                item_id,
                ai_summary=f"{UNEXPECTED_ERROR_PREFIX} {str(exc)[:100]}",
                ai_tags=[],
                ai_processing=False,
                ai_processed_at=utc_now(),
            )

        await self.agent.flush_usage()
        view = await self.repository.trimmed_view(item_id)
        if view is None:
            raise PipelineError(f"Email {item_id} disappeared during processing")
        return view

    async def _run_stages(self, email: EmailItem, on_step: Callable[[AgentStep], None]) -> None:
        item_id = email["id"]
        body = email_body_text(email)
        if not body:
            logger.warning("Email %s has no text body, skipping AI", item_id)
            await self.repository.update_ai_fields(
                item_id,
                ai_summary=EMPTY_BODY_SUMMARY,
                ai_tags=[],
                cleaned_body="",
                ai_processing=False,
                ai_processed_at=utc_now(),
            )
            return

        logger.info("Starting analysis for email %s (%.60r)", item_id, email.get("subject"))

        try:
            basic = await self.analyzer.summarize(email, body[: get_settings().body_prompt_chars])
            await self.repository.update_ai_fields(
                item_id, ai_summary=basic.summary, ai_tags=basic.tags, cleaned_body=basic.cleaned_body
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Basic analysis failed for %s: %s", item_id, exc)
            await self.repository.update_ai_fields(
                item_id, ai_summary=f"{ANALYSIS_FAILED_PREFIX}: {str(exc)[:100]}", ai_tags=[]
            )

        prompt_data = EmailPromptData(
            id=item_id,
            subject=email.get("subject") or "",
            from_address=email.get("from_address") or "",
            from_name=email.get("from_name"),
            text_body=body,
            attachments=describe_attachments(email.get("attachments") or []),
            inline_images=detect_inline_images(email.get("html_body")),
        )
        result = await self.agent.run(prompt_data, on_step)

        if not result.ok:
            logger.error("Agent analysis failed for %s: %s", item_id, result.error)
            await self.repository.update_ai_fields(
                item_id,
                ai_summary=f"{ANALYSIS_FAILED_PREFIX}: {(result.error or 'unbekannt')[:100]}",
                agent_analysis=None,
                agent_key_facts=None,
                suggested_reply=None,
                suggested_reply_subject=None,
                ai_processing=False,
                ai_processed_at=utc_now(),
            )
            return

        parsed = parse_analysis(result.narrative_text)
        clean_analysis = strip_json_block(result.narrative_text)
        logger.info(
            "Agent analysis done for %s: %d key facts (JSON: %s, fallback: %s)",
            item_id,
            len(parsed.facts),
            parsed.from_json,
            result.used_fallback,
        )
        await self.repository.update_ai_fields(
            item_id,
            agent_analysis=clean_analysis,
            agent_key_facts=parsed.facts_as_dicts(),
            suggested_reply=parsed.suggested_reply,
            customer_phone=parsed.customer_phone,
        )

        if self.precompute_reply:
            await self._pregenerate_reply(email, body, clean_analysis, on_step)

        await self.repository.update_ai_fields(item_id, ai_processing=False, ai_processed_at=utc_now())

    async def _pregenerate_reply(
        self,
        email: EmailItem,
        body: str,
        analysis: str,
        on_step: Callable[[AgentStep], None],
    ) -> None:
        item_id = email["id"]
        try:
            on_step(AgentStep("reply", "running", content="Antwort wird generiert..."))
        except Exception:  # noqa: BLE001
            logger.warning("Step callback failed for reply step", exc_info=True)

        context = f"[KUNDENKONTEXT]\n{analysis[:REPLY_CONTEXT_CHARS]}\n[/KUNDENKONTEXT]"
        try:
            draft = await self.analyzer.generate_reply(email, body, context)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Reply generation failed for %s: %s", item_id, exc)
            return

        await self.repository.update_ai_fields(
            item_id, suggested_reply=draft.body, suggested_reply_subject=draft.subject
        )
        logger.info("Pre-computed reply generated for %s", item_id)
