"""
Beat Executor: drives one participant through one beat.

Each beat is: generate -> parse -> permission filter -> truncate to
``max_events`` -> require a speak event. A parse failure, or a parse that
leaves no speak event, earns one repair call when the latency budget still
allows it. If the repair fails too, the beat degrades to a single synthesized
speak event built from the first usable line of the raw output, so every beat
yields exactly one reportable utterance.

Accepted events flow into a ``TurnAccumulator`` which is shared by every beat
of the turn: it owns the budget ledger, the running history that later beats
see, the working copy of private memory, and the ``on_event`` callback.
"""

from __future__ import annotations

import inspect
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from .context import TurnContext
from .events import (
    BudgetLedger,
    EventStreamError,
    build_fallback_speak_event,
    enters_history,
    event_to_history_line,
    events_for_private_memory,
    normalize_text,
    parse_event_stream,
)
from .latency import LATENCY_SKIP_REASON, stop_when_deadline_passed
from .llm import GenerationRequest, GenerationTrace, TextGenerator
from .logging_utils import env_flag, log_deterministic, log_info
from .prompts import (
    DEFAULT_PROMPTS,
    PromptLibrary,
    build_speaker_messages,
    build_speaker_repair_messages,
)
from .schemas import (
    Beat,
    Budget,
    EventOrigin,
    EventType,
    Participant,
    ReasoningEffort,
    TheatricalEvent,
)

# Private notes retained per participant (oldest dropped first)
MAX_AGENT_MEMORY = 12

FALLBACK_TEXT_MAX_CHARS = 360
FALLBACK_TEXT_DEFAULT = "I am here."

# Reported when parsing succeeds but the beat has no speak event left
NO_SPEAK_EVENT = "no-speak-event"

SPEAKER_TEMPERATURE = 0.5
SPEAKER_REPAIR_TEMPERATURE = 0.0
SPEAKER_MAX_ATTEMPTS = 2

EventCallback = Callable[[TheatricalEvent], Union[None, Awaitable[None]]]


async def maybe_await(value: Union[None, Awaitable[None]]) -> None:
    if inspect.isawaitable(value):
        await value


def extract_fallback_text(raw: str) -> str:
    """First non-empty line of ``raw`` (max 360 chars), or a stock line if blank."""

    text = normalize_text(raw or "")
    if not text:
        return FALLBACK_TEXT_DEFAULT
    lines = [line.strip() for line in text.split("\n") if line.strip()]
    line = lines[0] if lines else text
    return line[:FALLBACK_TEXT_MAX_CHARS]


def filter_for_beat(
    events: Iterable[TheatricalEvent], beat: Beat, participant: Participant
) -> List[TheatricalEvent]:
    """Drop disallowed event types, pin author/beat id, keep at most ``max_events``."""

    accepted: List[TheatricalEvent] = []
    for event in events:
        if event.type is EventType.ACTION and not beat.allow_action:
            continue
        if event.type is EventType.THOUGHT and not beat.allow_thought:
            continue
        accepted.append(
            event.model_copy(update={"author": participant.name, "beat_id": beat.beat_id})
        )
        if len(accepted) >= beat.max_events:
            break
    return accepted


def has_speak(events: Sequence[TheatricalEvent]) -> bool:
    return any(event.type is EventType.SPEAK for event in events)


class TurnAccumulator:
    """Turn-scoped sink for accepted events.

    Owns the budget ledger (cross-beat caps and dedup), the running history
    lines later beats are prompted with, and the working copy of each
    participant's private memory. Created once per turn by the orchestrator.
    """

    def __init__(
        self,
        budget: Budget,
        *,
        history_lines: Sequence[str] = (),
        agent_memory: Optional[Mapping[str, Sequence[str]]] = None,
        on_event: Optional[EventCallback] = None,
    ) -> None:
        self.ledger = BudgetLedger(budget)
        self.history_lines: List[str] = list(history_lines)
        self.agent_memory: Dict[str, List[str]] = {
            participant_id: [note for note in notes if isinstance(note, str)]
            for participant_id, notes in (agent_memory or {}).items()
        }
        self.events: List[TheatricalEvent] = []
        self.on_event = on_event

    async def emit(self, event: TheatricalEvent) -> Optional[TheatricalEvent]:
        """Run ``event`` through the ledger; record and announce it if admitted."""

        admitted = self.ledger.admit(event)
        if admitted is None:
            return None
        self.events.append(admitted)
        if enters_history(admitted):
            self.history_lines.append(event_to_history_line(admitted))
        if env_flag("TROUPE_VERBOSE"):
            log_info(f"{admitted.event_id} {event_to_history_line(admitted)}")
        if self.on_event is not None:
            await maybe_await(self.on_event(admitted))
        return admitted

    def remember(self, participant_id: str, notes: Sequence[str]) -> None:
        if not notes:
            return
        existing = self.agent_memory.get(participant_id, [])
        self.agent_memory[participant_id] = [*existing, *notes][-MAX_AGENT_MEMORY:]

    def memory_for(self, participant_id: str) -> List[str]:
        return list(self.agent_memory.get(participant_id, []))


class BeatExecutor:
    """Runs beats against the participant models.

    Args:
        generator: Text generation backend
        default_model: Model used for participants without a routed model
        participant_models: Participant id -> model id routing
        reasoning_effort: Reasoning setting for participant calls
        prompts: Prompt library supplying the speaker templates
    """

    def __init__(
        self,
        generator: TextGenerator,
        default_model: str,
        *,
        participant_models: Optional[Mapping[str, str]] = None,
        reasoning_effort: ReasoningEffort = ReasoningEffort.AUTO,
        prompts: PromptLibrary = DEFAULT_PROMPTS,
    ) -> None:
        self.generator = generator
        self.default_model = default_model
        self.participant_models = dict(participant_models or {})
        self.reasoning_effort = reasoning_effort
        self.prompts = prompts

    def model_for(self, participant: Participant) -> str:
        return self.participant_models.get(participant.id) or self.default_model

    async def run_beat(
        self,
        participant: Participant,
        beat: Beat,
        context: TurnContext,
        accumulator: TurnAccumulator,
    ) -> List[TheatricalEvent]:
        """Execute one beat and emit its events to ``accumulator``.

        Returns:
            The events admitted by the turn ledger, in generation order
        """

        model = self.model_for(participant)
        speaker_messages = build_speaker_messages(
            participant=participant,
            beat=beat,
            user_name=context.user_name,
            user_message=context.user_message,
            goal=context.goal,
            summary_window=context.summary_window,
            history_lines=accumulator.history_lines,
            preset_prompt=context.preset_prompt,
            agent_memory=accumulator.memory_for(participant.id),
            library=self.prompts,
        )
        metadata = context.trace_metadata(participant_id=participant.id, beat_id=beat.beat_id)
        beat_payload = beat.model_dump(mode="json", by_alias=True)

        attempts = 0
        raw = ""
        last_reason = ""
        parse_failed = False
        accepted: List[TheatricalEvent] = []

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(EventStreamError),
                stop=stop_after_attempt(SPEAKER_MAX_ATTEMPTS)
                | stop_when_deadline_passed(context.guard),
                reraise=True,
            ):
                with attempt:
                    attempts += 1
                    if attempts == 1:
                        origin = EventOrigin.PARTICIPANT
                        request = GenerationRequest(
                            model=model,
                            messages=speaker_messages,
                            temperature=SPEAKER_TEMPERATURE,
                            reasoning_effort=self.reasoning_effort,
                            trace=GenerationTrace(
                                name="turn.speaker",
                                input={
                                    "messages": [m.as_dict() for m in speaker_messages],
                                    "beat": beat_payload,
                                },
                                metadata=metadata,
                            ),
                        )
                    else:
                        origin = EventOrigin.REPAIR
                        log_deterministic(
                            f"Speaker {participant.id} ({beat.beat_id}): repairing ({last_reason})"
                        )
                        repair_messages = build_speaker_repair_messages(
                            raw=raw,
                            reason=last_reason,
                            participant_name=participant.name,
                            beat=beat,
                            library=self.prompts,
                        )
                        request = GenerationRequest(
                            model=model,
                            messages=repair_messages,
                            temperature=SPEAKER_REPAIR_TEMPERATURE,
                            reasoning_effort=self.reasoning_effort,
                            trace=GenerationTrace(
                                name="turn.speaker-repair",
                                input={
                                    "messages": [m.as_dict() for m in repair_messages],
                                    "beat": beat_payload,
                                },
                                metadata=metadata,
                            ),
                        )

                    raw = await self.generator(request)
                    try:
                        parsed = parse_event_stream(
                            raw,
                            default_author=participant.name,
                            default_beat_id=beat.beat_id,
                            origin=origin,
                            next_event_id=context.next_event_id,
                        )
                    except EventStreamError as exc:
                        parse_failed = True
                        last_reason = exc.reason
                        raise
                    parse_failed = False
                    accepted = filter_for_beat(parsed, beat, participant)
                    if not has_speak(accepted):
                        last_reason = NO_SPEAK_EVENT
                        raise EventStreamError(NO_SPEAK_EVENT)
        except EventStreamError:
            if attempts < SPEAKER_MAX_ATTEMPTS:
                context.note(
                    f"speaker-retry-skipped:{participant.id}:{beat.beat_id}:{LATENCY_SKIP_REASON}"
                )
            context.note(f"speaker-fallback:{participant.id}:{beat.beat_id}:{last_reason}")
            accepted = [
                build_fallback_speak_event(
                    author=participant.name,
                    content=extract_fallback_text(raw),
                    beat_id=beat.beat_id,
                    event_id=context.next_event_id(),
                    origin=EventOrigin.REPAIR if parse_failed else EventOrigin.PARTICIPANT,
                )
            ]

        admitted: List[TheatricalEvent] = []
        for event in accepted:
            result = await accumulator.emit(event)
            if result is not None:
                admitted.append(result)

        accumulator.remember(
            participant.id,
            [event.content for event in events_for_private_memory(admitted, participant.name)],
        )
        return admitted


__all__ = [
    "BeatExecutor",
    "TurnAccumulator",
    "extract_fallback_text",
    "filter_for_beat",
    "MAX_AGENT_MEMORY",
]
