"""Failure taxonomy of the processing pipeline.

Only ``BatchCrash`` ever reaches the orchestrator's outermost boundary; the
others are recovered locally where they are raised.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    pass


class ProviderError(PipelineError):
    """The chat-completion endpoint failed (network, timeout, rate limit, bad body)."""


class ToolExecutionError(PipelineError):
    """A business lookup failed or was asked for an unknown tool."""


class ParseError(PipelineError):
    """Tool arguments or a structured fact block could not be parsed."""


class BatchCrash(PipelineError):
    """An exception escaped the sequential processing loop."""
