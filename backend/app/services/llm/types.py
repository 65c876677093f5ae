"""Request, response and error types shared by the LLM orchestrator and its providers."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

RETRYABLE_MARKERS = (
    "rate limit",
    "429",
    "timeout",
    "timed out",
    "connection reset",
    "connection aborted",
    "overloaded",
    "529",
    "502",
    "503",
    "504",
)


class LLMStage(str, Enum):
    contextual_analysis = "contextual_analysis"


@dataclass
class LLMRequest:
    stage: LLMStage
    prompt: str
    system_prompt: str = ""
    timeout_seconds: int = 60
    expect_json: bool = False
    max_output_tokens: int = 4000


@dataclass
class ModelAttemptTrace:
    """One provider call made while serving a request."""

    stage: str
    provider: str
    model: str
    latency_ms: int
    status: str
    retry_count: int
    error_class: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class LLMResponse:
    text: str
    provider: str
    model: str
    attempts: List[ModelAttemptTrace] = field(default_factory=list)


class LLMOrchestrationError(RuntimeError):
    """Every route for a stage failed; ``attempts`` holds the trace of each call."""

    def __init__(
        self,
        message: str,
        *,
        attempts: Optional[List[ModelAttemptTrace]] = None,
    ) -> None:
        super().__init__(message)
        self.attempts = attempts or []

    @property
    def last_error(self) -> str:
        for attempt in reversed(self.attempts):
            if attempt.error_message:
                return f"{attempt.provider}:{attempt.model} {attempt.error_class}: {attempt.error_message}"
        return ""


class LLMProviderError(RuntimeError):
    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


def classify_retryable_error(exc: Exception) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in RETRYABLE_MARKERS)
