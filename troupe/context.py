"""Turn-scoped context shared by the director, the beat executor and compaction.

One ``TurnContext`` is built per turn by the orchestrator after state is
loaded. It carries the read-only inputs every generation step needs (who is
speaking, what was said, the budget) plus the two pieces of turn-owned
mutable bookkeeping: the event id counter and the diagnostic trace lines.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping

from .events import EventIdFactory, normalize_text
from .latency import LatencyGuard
from .logging_utils import log_degraded
from .schemas import Budget, MessageRole, Participant, SharedMessage

DEFAULT_USER_NAME = "User"
DEFAULT_PARTICIPANT_NAME = "Participant"


@dataclass
class TurnContext:
    """Inputs and turn-owned bookkeeping for one turn."""

    conversation_id: str
    turn_index: int
    user_name: str
    user_message: str
    participants: List[Participant]
    budget: Budget
    guard: LatencyGuard
    preset_id: str = "default"
    preset_prompt: str = ""
    goal: str = ""
    summary_window: str = ""
    history_lines: List[str] = field(default_factory=list)
    turn_trace: List[str] = field(default_factory=list)
    next_event_id: EventIdFactory = field(init=False)

    def __post_init__(self) -> None:
        self.next_event_id = EventIdFactory(f"t{self.turn_index + 1}")

    def note(self, line: str) -> None:
        """Record a degraded-path diagnostic on the turn trace and the console."""

        self.turn_trace.append(line)
        log_degraded(line)

    def trace_metadata(self, **extra: Any) -> Dict[str, Any]:
        return {"conversation_id": self.conversation_id, "turn": self.turn_index, **extra}


def normalize_name(value: str | None, fallback: str) -> str:
    name = normalize_text(value or "")
    return name or fallback


def build_history_lines(
    messages: Iterable[SharedMessage],
    *,
    user_name: str,
    participants_by_id: Mapping[str, Participant],
) -> List[str]:
    """Render stored shared messages as ``Name: text`` prompt lines.

    Agent messages are stored already rendered (``Author: content``); those are
    kept verbatim. Bare agent text is prefixed with the participant's name.
    """

    lines: List[str] = []
    for message in messages:
        if message.role is MessageRole.USER:
            lines.append(f"{user_name}: {message.text}")
        elif message.role is MessageRole.AGENT:
            text = normalize_text(message.text)
            if not text:
                continue
            if ":" in text:
                lines.append(text)
                continue
            participant = participants_by_id.get(message.agent_id or "")
            name = participant.name if participant else DEFAULT_PARTICIPANT_NAME
            lines.append(f"{name}: {text}")
        else:
            raise ValueError(f"Unknown message role: {message.role!r}")
    return lines
