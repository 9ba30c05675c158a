"""
Turn orchestrator.

Fully decoupled from file I/O, databases and global config. The generator,
state store, assignment store and tracer are injected.

Each turn walks a fixed state machine with no backward transitions:

    Loaded -> PlanAcquired -> BeatsExecuted -> Compacted -> Persisted -> Done

1. Validate input (empty message / no participants abort before anything loads)
2. Load room state once, seed the goal, resolve model routing
3. Acquire a director plan (attempt -> repair -> fallback)
4. Run beats strictly in plan order; caps and dedup span the whole turn
5. Append the user message and public events to shared history
6. Compact shared state when it has grown past the threshold
7. Advance the turn index and save the new state exactly once

A generation backend error propagates out of ``run_turn`` and nothing is
saved, so a failed turn leaves the stored state untouched.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from .compaction import StateCompactor
from .context import DEFAULT_USER_NAME, TurnContext, build_history_lines, normalize_name
from .director import Director, beat_id_for
from .events import (
    build_fallback_speak_event,
    count_events_by_type,
    enters_history,
    event_to_history_line,
    normalize_text,
    to_ndjson,
)
from .latency import LatencyGuard
from .llm import TextGenerator
from .logging_utils import log_info, log_success
from .persistence import InMemoryStateStore, ModelAssignmentStore, StateStore
from .prompts import DEFAULT_PROMPTS, PromptLibrary
from .routing import resolve_participant_models
from .schemas import (
    THEATRICAL_CONTRACT_VERSION,
    Budget,
    EventOrigin,
    EventType,
    MessageRole,
    Participant,
    Plan,
    ReasoningEffort,
    RoomState,
    RuntimeState,
    SharedMessage,
    SharedState,
    SpeakerOutput,
    SpeakerStep,
    TheatricalEvent,
    UserTier,
)
from .speaker import BeatExecutor, EventCallback, TurnAccumulator, maybe_await
from .tracing import NullTracer, TraceContext, Tracer, TurnTraceMeta

# Plans retained in RuntimeState.director_plan_history
DIRECTOR_HISTORY_LIMIT = 10

SAFETY_NET_TEXT = "I need one more beat to continue, but here is my take now."

BeatStartCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


# =============================
# Module-level Exceptions
# =============================


class TurnInputError(ValueError):
    """Raised when a turn cannot start; nothing has been loaded or saved."""


class EmptyMessageError(TurnInputError):
    """Raised when the caller's message is blank after normalisation."""

    def __init__(self, *, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        message = (
            f"Cannot run a turn for conversation '{conversation_id}': the user message is empty.\n\n"
            "Remediation tips:\n"
            "  - Strip-check input before calling run_turn\n"
            "  - Whitespace-only messages are treated as empty"
        )
        super().__init__(message)


class NoParticipantsError(TurnInputError):
    """Raised when no active participant remains for the turn."""

    def __init__(self, *, conversation_id: str, roster_size: int) -> None:
        self.conversation_id = conversation_id
        self.roster_size = roster_size
        message = (
            f"Cannot run a turn for conversation '{conversation_id}': "
            f"no active participants (roster size {roster_size}).\n\n"
            "Remediation tips:\n"
            "  - Pass at least one Participant in TurnRequest.participants\n"
            "  - Check the stage file's 'participants' list"
        )
        super().__init__(message)


# =============================
# Request / result
# =============================


class TurnPhase(str, Enum):
    LOADED = "loaded"
    PLAN_ACQUIRED = "plan_acquired"
    BEATS_EXECUTED = "beats_executed"
    COMPACTED = "compacted"
    PERSISTED = "persisted"
    DONE = "done"


@dataclass
class TurnRequest:
    """Everything one turn needs. The engine reads no global config."""

    conversation_id: str
    message: str
    participants: List[Participant]
    director_model: str
    default_participant_model: str
    caller_id: str = "user"
    caller_name: str = DEFAULT_USER_NAME
    caller_tier: UserTier = UserTier.BASE
    summarizer_model: Optional[str] = None
    director_reasoning: ReasoningEffort = ReasoningEffort.AUTO
    participant_reasoning: ReasoningEffort = ReasoningEffort.AUTO
    summarizer_reasoning: ReasoningEffort = ReasoningEffort.AUTO
    budget: Budget = field(default_factory=Budget)
    preset_id: str = "default"
    preset_prompt: str = ""
    goal: Optional[str] = None
    # 0 means the whole roster
    max_participants: int = 0
    compact_every_chars: Optional[int] = None
    compact_keep_messages: Optional[int] = None
    on_beat_start: Optional[BeatStartCallback] = None
    on_event: Optional[EventCallback] = None
    trace_context: Optional[TraceContext] = None


@dataclass
class TurnResult:
    output_text: str
    events: List[TheatricalEvent]
    plan: Plan
    state: RoomState
    phases: List[TurnPhase] = field(default_factory=list)


def resolve_active_participants(
    participants: Sequence[Participant], max_participants: int = 0
) -> List[Participant]:
    """First ``max_participants`` roster entries (at least one), or all when 0."""

    limit = int(max_participants) if max_participants and max_participants > 0 else len(participants)
    return list(participants[: max(1, limit)])


def agent_id_for(
    event: TheatricalEvent, plan: Plan, participants: Sequence[Participant]
) -> Optional[str]:
    """Participant id behind an event: its beat's owner, else the author's id."""

    for beat in plan.beats:
        if beat.beat_id == event.beat_id:
            return beat.participant_id
    for participant in participants:
        if participant.name == event.author:
            return participant.id
    return None


def build_speaker_outputs(
    events: Sequence[TheatricalEvent], plan: Plan, participants: Sequence[Participant]
) -> List[SpeakerOutput]:
    positions = {beat.beat_id: (index, beat) for index, beat in enumerate(plan.beats)}
    outputs: List[SpeakerOutput] = []
    for event in events:
        if event.type is not EventType.SPEAK:
            continue
        index, beat = positions.get(event.beat_id, (0, None))
        outputs.append(
            SpeakerOutput(
                agent_id=agent_id_for(event, plan, participants) or event.author,
                intent=beat.intent if beat else "respond",
                text=event.content,
                step_index=index,
            )
        )
    return outputs


class Orchestrator:
    """
    Turn orchestrator.

    Fully decoupled - accepts all dependencies as parameters. One instance can
    serve many conversations; per-turn state lives only inside ``run_turn``.
    The host must not run two turns for the same conversation concurrently.
    """

    def __init__(
        self,
        generator: TextGenerator,
        *,
        state_store: Optional[StateStore] = None,
        assignment_store: Optional[ModelAssignmentStore] = None,
        tracer: Optional[Tracer] = None,
        prompts: PromptLibrary = DEFAULT_PROMPTS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize orchestrator with all dependencies injected.

        Args:
            generator: Text generation backend used for every model call
            state_store: Room state storage (defaults to InMemory)
            assignment_store: Optional per-participant model routing store
            tracer: Optional tracer; the whole turn runs inside ``tracer.turn``
            prompts: Prompt templates for director, speakers and summarizer
            clock: Monotonic clock used by the latency guard
        """
        self.generator = generator
        self.state_store = state_store or InMemoryStateStore()
        self.assignment_store = assignment_store
        self.tracer: Tracer = tracer or NullTracer()
        self.prompts = prompts
        self.clock = clock

    async def run_turn(self, request: TurnRequest) -> TurnResult:
        """Run one full turn and persist the resulting room state.

        Raises:
            EmptyMessageError: Blank user message (nothing loaded or saved)
            NoParticipantsError: Empty roster (nothing loaded or saved)
            Exception: Any generation backend error, propagated unchanged
        """
        user_message = normalize_text(request.message or "")
        if not user_message:
            raise EmptyMessageError(conversation_id=request.conversation_id)

        if not request.participants:
            raise NoParticipantsError(conversation_id=request.conversation_id, roster_size=0)
        active = resolve_active_participants(request.participants, request.max_participants)

        guard = LatencyGuard.for_budget(request.budget, clock=self.clock)
        state = await self.state_store.load(request.conversation_id)
        phases = [TurnPhase.LOADED]

        meta = TurnTraceMeta(
            user_message=user_message,
            turn_index=state.shared.turn_index,
            participant_ids=[participant.id for participant in request.participants],
        )
        async with self.tracer.turn(request.trace_context, meta):
            return await self._run(request, state, active, user_message, guard, phases)

    async def _run(
        self,
        request: TurnRequest,
        state: RoomState,
        active: List[Participant],
        user_message: str,
        guard: LatencyGuard,
        phases: List[TurnPhase],
    ) -> TurnResult:
        shared = state.shared
        if request.goal and not shared.goal:
            shared = shared.model_copy(update={"goal": request.goal})
        turn_index = shared.turn_index

        log_info(
            f"Turn {turn_index} for {request.conversation_id}: "
            f"{len(active)}/{len(request.participants)} participant(s) active"
        )

        participants_by_id = {participant.id: participant for participant in request.participants}
        user_name = normalize_name(request.caller_name, DEFAULT_USER_NAME)
        history_lines = build_history_lines(
            shared.last_messages, user_name=user_name, participants_by_id=participants_by_id
        )

        participant_models = await resolve_participant_models(
            request.participants,
            default_model=request.default_participant_model,
            store=self.assignment_store,
            conversation_id=request.conversation_id,
            user_id=request.caller_id,
            tier=request.caller_tier,
        )

        context = TurnContext(
            conversation_id=request.conversation_id,
            turn_index=turn_index,
            user_name=user_name,
            user_message=user_message,
            participants=active,
            budget=request.budget,
            guard=guard,
            preset_id=request.preset_id,
            preset_prompt=request.preset_prompt,
            goal=shared.goal or request.goal or "",
            summary_window=shared.summary_window,
            history_lines=history_lines,
        )

        # Plan
        director = Director(
            self.generator,
            request.director_model,
            reasoning_effort=request.director_reasoning,
            prompts=self.prompts,
            tracer=self.tracer,
        )
        plan = await director.acquire_plan(context)
        phases.append(TurnPhase.PLAN_ACQUIRED)

        # Beats
        accumulator = TurnAccumulator(
            request.budget,
            history_lines=history_lines,
            agent_memory=shared.agent_memory,
            on_event=request.on_event,
        )
        executor = BeatExecutor(
            self.generator,
            request.default_participant_model,
            participant_models=participant_models,
            reasoning_effort=request.participant_reasoning,
            prompts=self.prompts,
        )
        for step_index, beat in enumerate(plan.beats):
            participant = participants_by_id.get(beat.participant_id)
            if participant is None:
                continue
            if request.on_beat_start is not None:
                await maybe_await(
                    request.on_beat_start(
                        {
                            "beat_id": beat.beat_id,
                            "participant_id": participant.id,
                            "name": participant.name,
                            "step_index": step_index,
                            "intent": beat.intent,
                        }
                    )
                )
            await executor.run_beat(participant, beat, context, accumulator)

        if not accumulator.events:
            context.note("director-safety-net")
            await accumulator.emit(
                build_fallback_speak_event(
                    author=active[0].name,
                    content=SAFETY_NET_TEXT,
                    beat_id=beat_id_for(turn_index, 1),
                    event_id=context.next_event_id(),
                    origin=EventOrigin.DIRECTOR,
                )
            )
        events = list(accumulator.events)
        phases.append(TurnPhase.BEATS_EXECUTED)

        # Shared history
        new_messages = [SharedMessage(role=MessageRole.USER, text=user_message, turn_index=turn_index)]
        new_messages.extend(
            SharedMessage(
                role=MessageRole.AGENT,
                agent_id=agent_id_for(event, plan, request.participants),
                text=event_to_history_line(event),
                turn_index=turn_index,
            )
            for event in events
            if enters_history(event)
        )
        shared_with_messages = shared.model_copy(
            update={
                "last_messages": [*shared.last_messages, *new_messages],
                "agent_memory": accumulator.agent_memory,
            }
        )

        # Compaction
        compactor = StateCompactor(
            self.generator,
            request.summarizer_model,
            every_chars=request.compact_every_chars,
            keep_messages=request.compact_keep_messages,
            reasoning_effort=request.summarizer_reasoning,
            prompts=self.prompts,
        )
        compacted = await compactor.maybe_compact(
            shared_with_messages,
            context=context,
            history_lines=accumulator.history_lines,
            events=events,
        )
        phases.append(TurnPhase.COMPACTED)

        # Persist
        next_shared: SharedState = compacted.model_copy(update={"turn_index": turn_index + 1})
        next_runtime: RuntimeState = state.runtime.model_copy(
            update={
                "turn_index": next_shared.turn_index,
                "last_user_message": user_message,
                "speaker_plan": [
                    SpeakerStep(agent_id=beat.participant_id, intent=beat.intent)
                    for beat in plan.beats
                ],
                "speaker_outputs": build_speaker_outputs(events, plan, request.participants),
                "turn_trace": [
                    f"contract:v{THEATRICAL_CONTRACT_VERSION}",
                    f"director:source:{plan.trace.source.value}",
                    f"director:attempts:{plan.trace.attempts}",
                    f"events:{len(events)}",
                    *context.turn_trace,
                ],
                "director_plan_history": [*state.runtime.director_plan_history, plan][
                    -DIRECTOR_HISTORY_LIMIT:
                ],
                "theatrical_contract_version": THEATRICAL_CONTRACT_VERSION,
            }
        )
        next_state = RoomState(shared=next_shared, runtime=next_runtime)
        await self.state_store.save(request.conversation_id, next_state)
        phases.append(TurnPhase.PERSISTED)

        counts = count_events_by_type(events)
        log_success(
            f"Turn {turn_index} done: plan={plan.trace.source.value} attempts={plan.trace.attempts} "
            f"speak={counts['speak']} action={counts['action']} thought={counts['thought']} "
            f"total={len(events)} latency_ms={guard.elapsed_ms()}"
        )
        phases.append(TurnPhase.DONE)

        return TurnResult(
            output_text=to_ndjson(events),
            events=events,
            plan=plan,
            state=next_state,
            phases=phases,
        )


__all__ = [
    "Orchestrator",
    "TurnRequest",
    "TurnResult",
    "TurnPhase",
    "TurnInputError",
    "EmptyMessageError",
    "NoParticipantsError",
    "resolve_active_participants",
]
