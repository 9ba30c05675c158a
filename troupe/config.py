"""
Troupe Configuration

Loads configuration from environment variables with sensible defaults. The
engine itself never reads this during a turn; hosts and examples use it to
fill a ``TurnRequest``.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

from troupe.schemas import Budget, ReasoningEffort

# Load .env file if it exists
load_dotenv()


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


class Config:
    """Application configuration loaded from environment variables."""

    # LLM Provider Configuration ("openai", "anthropic", "ollama", ...)
    LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "openai")
    DIRECTOR_MODEL: str = os.getenv("DIRECTOR_MODEL", "gpt-5-nano")
    PARTICIPANT_MODEL: str = os.getenv("PARTICIPANT_MODEL", "gpt-5-nano")
    # Empty disables summarisation
    SUMMARIZER_MODEL: str = os.getenv("SUMMARIZER_MODEL", "")

    # API Keys
    ANTHROPIC_API_KEY: str | None = os.getenv("ANTHROPIC_API_KEY")
    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")

    # Local LLM (Ollama)
    OLLAMA_BASE_URL: str | None = os.getenv("OLLAMA_BASE_URL")

    # Reasoning effort per role; "auto" means the parameter is not sent
    DIRECTOR_REASONING: str = os.getenv("DIRECTOR_REASONING", "auto")
    PARTICIPANT_REASONING: str = os.getenv("PARTICIPANT_REASONING", "auto")
    SUMMARIZER_REASONING: str = os.getenv("SUMMARIZER_REASONING", "auto")

    # Turn budget defaults
    MAX_DIRECTOR_ATTEMPTS: int = _int_env("MAX_DIRECTOR_ATTEMPTS", 2)
    MAX_ACTION_EVENTS_PER_TURN: int = _int_env("MAX_ACTION_EVENTS_PER_TURN", 2)
    MAX_THOUGHT_EVENTS_PER_TURN: int = _int_env("MAX_THOUGHT_EVENTS_PER_TURN", 2)
    MAX_THOUGHT_CHARS_PER_EVENT: int = _int_env("MAX_THOUGHT_CHARS_PER_EVENT", 240)
    TARGET_P95_TURN_LATENCY_MS: int = _int_env("TARGET_P95_TURN_LATENCY_MS", 0)

    # Compaction
    COMPACT_EVERY_CHARS: int = _int_env("COMPACT_EVERY_CHARS", 12000)
    COMPACT_KEEP_MESSAGES: int = _int_env("COMPACT_KEEP_MESSAGES", 5)

    # 0 = every participant on the roster
    MAX_PARTICIPANTS: int = _int_env("MAX_PARTICIPANTS", 0)

    # Storage
    STATE_DIR: Path = Path(os.getenv("STATE_DIR", "troupe_state"))
    DATABASE_URL: str = os.getenv("DATABASE_URL", "postgresql://localhost/troupe")

    # Project Paths
    PROJECT_ROOT: Path = Path(__file__).parent.parent
    STAGES_DIR: Path = PROJECT_ROOT / "examples" / "stages"

    @classmethod
    def default_budget(cls) -> Budget:
        """Budget built from the environment defaults."""
        return Budget(
            max_director_attempts=cls.MAX_DIRECTOR_ATTEMPTS,
            max_action_events_per_turn=cls.MAX_ACTION_EVENTS_PER_TURN,
            max_thought_events_per_turn=cls.MAX_THOUGHT_EVENTS_PER_TURN,
            max_thought_chars_per_event=cls.MAX_THOUGHT_CHARS_PER_EVENT,
            target_p95_turn_latency_ms=cls.TARGET_P95_TURN_LATENCY_MS,
        )

    @classmethod
    def validate(cls) -> None:
        """Validate configuration and raise errors if required values are missing."""
        if not cls.DIRECTOR_MODEL or not cls.PARTICIPANT_MODEL:
            raise ValueError("DIRECTOR_MODEL and PARTICIPANT_MODEL must both be set")

        for name in ("DIRECTOR_REASONING", "PARTICIPANT_REASONING", "SUMMARIZER_REASONING"):
            value = getattr(cls, name)
            try:
                ReasoningEffort(value)
            except ValueError:
                allowed = "|".join(effort.value for effort in ReasoningEffort)
                raise ValueError(f"{name} must be one of {allowed}, got {value!r}") from None

        if cls.LLM_PROVIDER == "anthropic" and not cls.ANTHROPIC_API_KEY:
            raise ValueError(
                "ANTHROPIC_API_KEY is required when using the 'anthropic' provider"
            )

        if cls.LLM_PROVIDER == "openai" and not cls.OPENAI_API_KEY:
            raise ValueError(
                "OPENAI_API_KEY is required when using the 'openai' provider. "
                "For local models, set LLM_PROVIDER=ollama (and OLLAMA_BASE_URL if needed)."
            )

    @classmethod
    def display(cls) -> str:
        """Return a formatted string showing current configuration."""
        budget = cls.default_budget()
        lines = [
            "Troupe Configuration:",
            f"  LLM Provider: {cls.LLM_PROVIDER}",
            f"  Director Model: {cls.DIRECTOR_MODEL} (reasoning={cls.DIRECTOR_REASONING})",
            f"  Participant Model: {cls.PARTICIPANT_MODEL} (reasoning={cls.PARTICIPANT_REASONING})",
            f"  Summarizer Model: {cls.SUMMARIZER_MODEL or '(disabled)'}",
            f"  Budget: attempts={budget.max_director_attempts} actions={budget.max_action_events_per_turn} "
            f"thoughts={budget.max_thought_events_per_turn} thought_chars={budget.max_thought_chars_per_event} "
            f"p95_ms={budget.target_p95_turn_latency_ms or 'unlimited'}",
            f"  Compaction: every {cls.COMPACT_EVERY_CHARS} chars, keep {cls.COMPACT_KEEP_MESSAGES}",
            f"  State Dir: {cls.STATE_DIR}",
        ]
        return "\n".join(lines)
