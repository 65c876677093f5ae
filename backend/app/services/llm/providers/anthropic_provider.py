from __future__ import annotations

from typing import Optional

from anthropic import Anthropic

from app.config import Settings, get_settings
from app.services.llm.types import LLMProviderError, classify_retryable_error


class AnthropicProvider:
    name = "anthropic"

    def __init__(self, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        if not settings.anthropic_api_key:
            raise LLMProviderError("ANTHROPIC_API_KEY not configured", retryable=False)
        self._client = Anthropic(api_key=settings.anthropic_api_key)

    def generate(
        self,
        *,
        model: str,
        prompt: str,
        timeout_seconds: int,
        system_prompt: str = "",
        expect_json: bool = False,
        max_output_tokens: int = 4000,
    ) -> str:
        # No native JSON mode; the prompt carries the output contract.
        del expect_json
        kwargs = {}
        if system_prompt:
            kwargs["system"] = system_prompt
        try:
            response = self._client.messages.create(
                model=model,
                max_tokens=max_output_tokens,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout_seconds,
                **kwargs,
            )
            text_parts = []
            for block in getattr(response, "content", []) or []:
                value = getattr(block, "text", None)
                if value:
                    text_parts.append(str(value))
            return "\n".join(text_parts).strip()
        except Exception as exc:
            raise LLMProviderError(str(exc), retryable=classify_retryable_error(exc)) from exc
