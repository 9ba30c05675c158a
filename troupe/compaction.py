"""State compaction: fold long shared history into the summary window."""

from __future__ import annotations

from typing import List, Optional, Sequence

from .context import TurnContext
from .events import events_for_summarizer, normalize_text
from .llm import GenerationRequest, GenerationTrace, TextGenerator
from .logging_utils import log_deterministic, log_success
from .prompts import DEFAULT_PROMPTS, PromptLibrary, build_summarizer_messages
from .schemas import ReasoningEffort, SharedMessage, SharedState, TheatricalEvent

DEFAULT_COMPACT_EVERY_CHARS = 12000
DEFAULT_COMPACT_KEEP_MESSAGES = 5
SUMMARIZER_TEMPERATURE = 0.2


def estimate_shared_chars(shared: SharedState) -> int:
    """Size estimate: goal + summary window + every retained message's text."""

    history_chars = sum(len(message.text) for message in shared.last_messages)
    return len(shared.goal) + len(shared.summary_window) + history_chars


def trim_messages(messages: Sequence[SharedMessage], keep: int) -> List[SharedMessage]:
    """Keep the newest ``keep`` messages (none when ``keep`` <= 0)."""

    if keep <= 0:
        return []
    return list(messages[-keep:])


class StateCompactor:
    """Summarises shared state once it grows past a character threshold.

    Compaction replaces ``summary_window`` and trims ``last_messages``. It never
    touches ``goal`` or ``agent_memory``. Without a summarizer model the state
    passes through unchanged even when over the threshold.
    """

    def __init__(
        self,
        generator: TextGenerator,
        model: Optional[str] = None,
        *,
        every_chars: Optional[int] = None,
        keep_messages: Optional[int] = None,
        reasoning_effort: ReasoningEffort = ReasoningEffort.AUTO,
        prompts: PromptLibrary = DEFAULT_PROMPTS,
    ) -> None:
        self.generator = generator
        self.model = model
        self.every_chars = (
            int(every_chars) if every_chars is not None and every_chars > 0
            else DEFAULT_COMPACT_EVERY_CHARS
        )
        self.keep_messages = (
            int(keep_messages) if keep_messages is not None and keep_messages >= 0
            else DEFAULT_COMPACT_KEEP_MESSAGES
        )
        self.reasoning_effort = reasoning_effort
        self.prompts = prompts

    async def maybe_compact(
        self,
        shared: SharedState,
        *,
        context: TurnContext,
        history_lines: Sequence[str],
        events: Sequence[TheatricalEvent],
    ) -> SharedState:
        """Return ``shared`` compacted if it is over the threshold, else unchanged.

        The summarizer sees the summary window and goal as they were when the
        turn started, the turn's running history and its meaningful events.
        """

        chars = estimate_shared_chars(shared)
        if chars < self.every_chars:
            return shared
        if not self.model:
            log_deterministic(
                f"Compaction due ({chars} >= {self.every_chars} chars) but no summarizer model"
            )
            return shared

        messages = build_summarizer_messages(
            user_name=context.user_name,
            user_message=context.user_message,
            goal=context.goal,
            summary_window=context.summary_window,
            history_lines=history_lines,
            meaningful_events=events_for_summarizer(events),
            library=self.prompts,
        )
        raw = await self.generator(
            GenerationRequest(
                model=self.model,
                messages=messages,
                temperature=SUMMARIZER_TEMPERATURE,
                reasoning_effort=self.reasoning_effort,
                trace=GenerationTrace(name="turn.summarizer", metadata=context.trace_metadata()),
            )
        )

        summary = normalize_text(raw or "") or shared.summary_window
        trimmed = trim_messages(shared.last_messages, self.keep_messages)
        log_success(
            f"Compacted shared state: {chars} chars, kept {len(trimmed)}/{len(shared.last_messages)} messages"
        )
        return shared.model_copy(update={"summary_window": summary, "last_messages": trimmed})


__all__ = ["StateCompactor", "estimate_shared_chars", "trim_messages"]
