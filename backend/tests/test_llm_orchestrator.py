from app.config import Settings
from app.services.llm.orchestrator import LLMOrchestrator
from app.services.llm.types import (
    LLMOrchestrationError,
    LLMProviderError,
    LLMRequest,
    LLMStage,
    classify_retryable_error,
)


class _FakeProvider:
    def __init__(self, responses):
        self._responses = list(responses)
        self.calls = []

    def generate(
        self,
        *,
        model: str,
        prompt: str,
        timeout_seconds: int,
        system_prompt: str = "",
        expect_json: bool = False,
        max_output_tokens: int = 4000,
    ):
        self.calls.append({"model": model, "system_prompt": system_prompt, "expect_json": expect_json})
        if not self._responses:
            return ""
        nxt = self._responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return str(nxt)


def _orchestrator(**overrides):
    settings = Settings(stage_retry_backoff_seconds=0, **overrides)
    return LLMOrchestrator(settings, sleep=lambda _seconds: None)


def test_orchestrator_falls_back_to_next_provider(monkeypatch):
    orchestrator = _orchestrator()
    routes = [("gemini", "gemini-2.0-flash"), ("openai", "gpt-4.1-mini")]
    monkeypatch.setattr(orchestrator, "_routes_for_stage", lambda _stage: routes)
    providers = {
        "gemini": _FakeProvider([LLMProviderError("schema invalid", retryable=False)]),
        "openai": _FakeProvider(['{"findings": [{"wcagCriterion": "1.1.1", "severity": "serious"}]}']),
    }
    monkeypatch.setattr(orchestrator, "_provider", lambda name: providers[name])

    response = orchestrator.run_stage(
        LLMRequest(
            stage=LLMStage.contextual_analysis,
            prompt="Return JSON.",
            system_prompt="You are an expert accessibility auditor.",
            timeout_seconds=30,
            expect_json=True,
        )
    )
    assert response.provider == "openai"
    assert response.model == "gpt-4.1-mini"
    assert len(response.attempts) == 2
    assert response.attempts[0].provider == "gemini"
    assert response.attempts[1].provider == "openai"
    assert providers["openai"].calls[0]["system_prompt"] == "You are an expert accessibility auditor."
    assert providers["openai"].calls[0]["expect_json"] is True


def test_orchestrator_retries_retryable_provider_errors(monkeypatch):
    orchestrator = _orchestrator(stage_retry_max_attempts=2)
    monkeypatch.setattr(orchestrator, "_routes_for_stage", lambda _stage: [("anthropic", "claude-3-5-haiku-latest")])
    provider = _FakeProvider(
        [
            LLMProviderError("overloaded", retryable=True),
            '{"findings": []}',
        ]
    )
    monkeypatch.setattr(
        orchestrator,
        "_provider",
        lambda _name: provider,
    )

    response = orchestrator.run_stage(
        LLMRequest(
            stage=LLMStage.contextual_analysis,
            prompt="Return JSON.",
            timeout_seconds=20,
            expect_json=True,
        )
    )
    assert response.provider == "anthropic"
    assert len(response.attempts) == 2
    assert response.attempts[0].status == "retryable_error"
    assert response.attempts[1].status == "success"


def test_orchestrator_raises_when_all_routes_fail(monkeypatch):
    orchestrator = _orchestrator()
    monkeypatch.setattr(orchestrator, "_routes_for_stage", lambda _stage: [("gemini", "gemini-2.0-flash")])
    monkeypatch.setattr(
        orchestrator,
        "_provider",
        lambda _name: _FakeProvider([LLMProviderError("schema invalid", retryable=False)]),
    )

    try:
        orchestrator.run_stage(
            LLMRequest(
                stage=LLMStage.contextual_analysis,
                prompt="Analyze.",
                timeout_seconds=20,
            )
        )
    except LLMOrchestrationError as exc:
        assert exc.attempts
        assert exc.attempts[0].status == "terminal_error"
        assert exc.last_error == "gemini:gemini-2.0-flash LLMProviderError: schema invalid"
    else:  # pragma: no cover - defensive
        raise AssertionError("Expected LLMOrchestrationError")


def test_default_routes_come_from_settings():
    orchestrator = _orchestrator(llm_stage_contextual_models="anthropic:claude-3-5-haiku-latest, gemini:gemini-2.0-flash")
    assert orchestrator._routes_for_stage("contextual_analysis") == [
        ("anthropic", "claude-3-5-haiku-latest"),
        ("gemini", "gemini-2.0-flash"),
    ]


def test_unknown_provider_is_terminal():
    orchestrator = _orchestrator()
    try:
        orchestrator._provider("mistral")
    except LLMProviderError as exc:
        assert exc.retryable is False
    else:  # pragma: no cover - defensive
        raise AssertionError("Expected LLMProviderError")


def test_retryable_errors_are_classified_from_their_message():
    assert classify_retryable_error(RuntimeError("Error code: 429 - rate limit exceeded")) is True
    assert classify_retryable_error(RuntimeError("Request timed out")) is True
    assert classify_retryable_error(RuntimeError("503 Service Unavailable")) is True
    assert classify_retryable_error(ValueError("invalid api key")) is False
    assert LLMOrchestrationError("failed").last_error == ""
