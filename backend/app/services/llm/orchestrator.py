from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from app.config import Settings, get_settings
from app.services.llm.providers.anthropic_provider import AnthropicProvider
from app.services.llm.providers.gemini_provider import GeminiProvider
from app.services.llm.providers.openai_provider import OpenAIProvider
from app.services.llm.types import (
    LLMOrchestrationError,
    LLMProviderError,
    LLMRequest,
    LLMResponse,
    ModelAttemptTrace,
    classify_retryable_error,
)

logger = logging.getLogger(__name__)

PROVIDER_CLASSES = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}


class LLMOrchestrator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._providers: Dict[str, object] = {}
        self._sleep = sleep

    def _provider(self, name: str):
        key = str(name or "").strip().lower()
        if key in self._providers:
            return self._providers[key]
        provider_class = PROVIDER_CLASSES.get(key)
        if provider_class is None:
            raise LLMProviderError(f"Unsupported LLM provider: {name}", retryable=False)
        instance = provider_class(self._settings)
        self._providers[key] = instance
        return instance

    def _routes_for_stage(self, stage_name: str) -> List[Tuple[str, str]]:
        routes = self._settings.stage_model_routes(stage_name)
        return routes if routes else [("openai", "gpt-4.1-mini")]

    def run_stage(self, request: LLMRequest) -> LLMResponse:
        attempts: List[ModelAttemptTrace] = []
        routes = self._routes_for_stage(request.stage.value)
        max_attempts = max(1, int(self._settings.stage_retry_max_attempts))
        backoff = max(0.0, float(self._settings.stage_retry_backoff_seconds))

        for provider_name, model in routes:
            retry_count = 0
            while retry_count < max_attempts:
                t0 = time.perf_counter()
                try:
                    provider = self._provider(provider_name)
                    text = provider.generate(
                        model=model,
                        prompt=request.prompt,
                        timeout_seconds=max(1, int(request.timeout_seconds)),
                        system_prompt=request.system_prompt,
                        expect_json=bool(request.expect_json),
                        max_output_tokens=request.max_output_tokens,
                    )
                    attempts.append(
                        ModelAttemptTrace(
                            stage=request.stage.value,
                            provider=provider_name,
                            model=model,
                            latency_ms=int((time.perf_counter() - t0) * 1000),
                            status="success",
                            retry_count=retry_count,
                        )
                    )
                    return LLMResponse(
                        text=text,
                        provider=provider_name,
                        model=model,
                        attempts=attempts,
                    )
                except Exception as exc:
                    retryable = False
                    if isinstance(exc, LLMProviderError):
                        retryable = bool(exc.retryable)
                    if not retryable:
                        retryable = classify_retryable_error(exc)
                    attempts.append(
                        ModelAttemptTrace(
                            stage=request.stage.value,
                            provider=provider_name,
                            model=model,
                            latency_ms=int((time.perf_counter() - t0) * 1000),
                            status="retryable_error" if retryable else "terminal_error",
                            retry_count=retry_count,
                            error_class=exc.__class__.__name__,
                            error_message=str(exc)[:500],
                        )
                    )
                    logger.warning(
                        "LLM route %s:%s failed for stage=%s (retry %d, retryable=%s): %s",
                        provider_name, model, request.stage.value, retry_count, retryable, exc,
                    )
                    if retryable and retry_count < max_attempts - 1:
                        if backoff > 0:
                            self._sleep(backoff * (retry_count + 1))
                        retry_count += 1
                        continue
                    break

        raise LLMOrchestrationError(
            f"All model routes failed for stage={request.stage.value}",
            attempts=attempts,
        )
