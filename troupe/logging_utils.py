"""Console diagnostics for troupe turns.

Colour-coded output distinguishes deterministic bookkeeping from generation
calls and degraded paths.
"""

import os
from enum import Enum


class Color(Enum):
    """ANSI color codes for terminal output."""

    BLUE = "\033[94m"      # Deterministic steps (parsing, caps, compaction checks)
    YELLOW = "\033[93m"    # Generation calls (director, speakers, summarizer)
    RED = "\033[91m"       # Repairs, fallbacks, skipped retries
    GREEN = "\033[92m"     # Success/completion
    CYAN = "\033[96m"      # Info/metadata

    BOLD = "\033[1m"
    RESET = "\033[0m"


def colored(text: str, color: Color, bold: bool = False) -> str:
    """Wrap text in ANSI color codes unless TROUPE_NO_COLOR is set."""
    if os.getenv("TROUPE_NO_COLOR"):
        return text

    prefix = color.value
    if bold:
        prefix = Color.BOLD.value + prefix

    return f"{prefix}{text}{Color.RESET.value}"


def env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in ("1", "true", "yes")


def log_deterministic(message: str) -> None:
    print(colored(f"  {LOG_TAG_DETERMINISTIC} {message}", Color.BLUE))


def log_llm(message: str) -> None:
    print(colored(f"  {LOG_TAG_LLM} {message}", Color.YELLOW))


def log_degraded(message: str) -> None:
    print(colored(f"  {LOG_TAG_DEGRADED} {message}", Color.RED))


def log_success(message: str) -> None:
    print(colored(f"  {LOG_TAG_SUCCESS} {message}", Color.GREEN))


def log_info(message: str) -> None:
    print(colored(f"  {LOG_TAG_INFO} {message}", Color.CYAN))


# Markers for operation types (color-blind accessible)
LOG_TAG_DETERMINISTIC = "[•]"
LOG_TAG_LLM = "[AI]"
LOG_TAG_DEGRADED = "[!]"
LOG_TAG_SUCCESS = "[✓]"
LOG_TAG_INFO = "[i]"
