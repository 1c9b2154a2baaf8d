from __future__ import annotations

from functools import lru_cache

from inboxai.services.agent import EmailAgent
from inboxai.services.analysis import EmailAnalyzer
from inboxai.services.emails import EmailRepository
from inboxai.services.event_bus import EventBus
from inboxai.services.llm import ChatProvider, OpenAIChatProvider
from inboxai.services.pipeline import EmailPipeline
from inboxai.services.processing import ProcessingOrchestrator
from inboxai.services.tools import BusinessToolExecutor
from inboxai.services.usage import UsageTracker


@lru_cache(maxsize=1)
def get_event_bus() -> EventBus:
    return EventBus()


@lru_cache(maxsize=1)
def get_provider() -> ChatProvider:
    return OpenAIChatProvider()


@lru_cache(maxsize=1)
def get_repository() -> EmailRepository:
    return EmailRepository()


@lru_cache(maxsize=1)
def get_usage_tracker() -> UsageTracker:
    return UsageTracker()


@lru_cache(maxsize=1)
def get_orchestrator() -> ProcessingOrchestrator:
    provider = get_provider()
    usage = get_usage_tracker()
    repository = get_repository()
    pipeline = EmailPipeline(
        repository,
        EmailAnalyzer(provider, usage),
        EmailAgent(provider, BusinessToolExecutor(), usage),
    )
    return ProcessingOrchestrator(pipeline, repository, get_event_bus())


def reset_dependencies() -> None:
    for getter in (get_event_bus, get_provider, get_repository, get_usage_tracker, get_orchestrator):
        getter.cache_clear()
