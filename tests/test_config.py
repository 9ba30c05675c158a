import pytest

from troupe.config import Config


def test_default_budget_reflects_config(monkeypatch):
    monkeypatch.setattr(Config, "MAX_ACTION_EVENTS_PER_TURN", 0)
    monkeypatch.setattr(Config, "TARGET_P95_TURN_LATENCY_MS", 9000)

    budget = Config.default_budget()

    assert budget.max_action_events_per_turn == 0
    assert budget.target_p95_turn_latency_ms == 9000
    assert budget.max_director_attempts == Config.MAX_DIRECTOR_ATTEMPTS


def test_validate_requires_api_key_for_openai(monkeypatch):
    monkeypatch.setattr(Config, "LLM_PROVIDER", "openai")
    monkeypatch.setattr(Config, "OPENAI_API_KEY", None)

    with pytest.raises(ValueError, match="OPENAI_API_KEY"):
        Config.validate()


def test_validate_rejects_unknown_reasoning(monkeypatch):
    monkeypatch.setattr(Config, "LLM_PROVIDER", "ollama")
    monkeypatch.setattr(Config, "PARTICIPANT_REASONING", "extreme")

    with pytest.raises(ValueError, match="PARTICIPANT_REASONING"):
        Config.validate()


def test_validate_accepts_local_provider(monkeypatch):
    monkeypatch.setattr(Config, "LLM_PROVIDER", "ollama")
    monkeypatch.setattr(Config, "DIRECTOR_REASONING", "auto")
    monkeypatch.setattr(Config, "PARTICIPANT_REASONING", "low")
    monkeypatch.setattr(Config, "SUMMARIZER_REASONING", "auto")

    Config.validate()
    assert "LLM Provider: ollama" in Config.display()
