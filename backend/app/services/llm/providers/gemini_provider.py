from __future__ import annotations

from typing import Optional

from google import genai
from google.genai import types

from app.config import Settings, get_settings
from app.services.llm.types import LLMProviderError, classify_retryable_error


class GeminiProvider:
    name = "gemini"

    def __init__(self, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        if not settings.gemini_api_key:
            raise LLMProviderError("GEMINI_API_KEY not configured", retryable=False)
        self._client = genai.Client(api_key=settings.gemini_api_key)

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
        cfg = types.GenerateContentConfig(
            system_instruction=system_prompt or None,
            response_mime_type="application/json" if expect_json else None,
            max_output_tokens=max_output_tokens,
            temperature=0.1,
            http_options=types.HttpOptions(timeout=int(timeout_seconds) * 1000),
        )
        try:
            response = self._client.models.generate_content(
                model=model,
                contents=prompt,
                config=cfg,
            )
            return str(response.text or "").strip()
        except Exception as exc:
            raise LLMProviderError(str(exc), retryable=classify_retryable_error(exc)) from exc
