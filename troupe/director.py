"""
Plan Builder: turns a director generation response into a validated plan.

``build_plan`` is pure validation. ``Director.acquire_plan`` owns the
acquisition cascade:

    Attempted -> Repaired -> Fallback

The first call uses the director prompt. If the response does not validate and
the budget allows more than one attempt, a single repair call carries the
failure reason and the broken payload back to the model. Whatever happens, the
cascade ends with a usable plan: when no attempt validates, a fallback plan
gives every active participant one generic beat.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from .context import TurnContext
from .events import clamp, normalize_text, to_safe_int
from .latency import LATENCY_SKIP_REASON, stop_when_deadline_passed
from .llm import GenerationRequest, GenerationTrace, TextGenerator
from .logging_utils import log_deterministic, log_success
from .prompts import (
    DEFAULT_PROMPTS,
    PromptLibrary,
    build_director_messages,
    build_director_repair_messages,
)
from .schemas import (
    Beat,
    Budget,
    Participant,
    Plan,
    PlanSource,
    PlanTrace,
    ReasoningEffort,
)
from .tracing import Tracer

# Reason codes reported by build_plan
DIRECTOR_INVALID_JSON = "director-invalid-json"
DIRECTOR_MISSING_BEATS = "director-missing-beats"
DIRECTOR_NO_VALID_BEATS = "director-no-valid-beats"

DEFAULT_INTENT = "respond-helpfully"
DEFAULT_TONE_HINT = "balanced"
MAX_INTENT_CHARS = 140
MAX_TONE_HINT_CHARS = 120
DEFAULT_MAX_EVENTS_PER_BEAT = 2
FALLBACK_MAX_EVENTS_PER_BEAT = 1
MAX_DIRECTOR_ATTEMPTS_CEILING = 3

DIRECTOR_TEMPERATURE = 0.2
DIRECTOR_REPAIR_TEMPERATURE = 0.0


class PlanValidationError(ValueError):
    """Raised when a director response cannot be turned into a plan."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Director plan rejected: {reason}")


# ============================================================================
# Lenient field coercion
# ============================================================================


def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    """Parse ``raw`` as a JSON object, tolerating prose around it.

    Tries the whole string first, then the substring between the first ``{``
    and the last ``}``. Returns None when neither is a JSON object.
    """

    trimmed = (raw or "").strip()
    if not trimmed:
        return None
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    start = trimmed.find("{")
    end = trimmed.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(trimmed[start : end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def to_bool(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return fallback


def to_short_text(value: Any, fallback: str, max_chars: int) -> str:
    if not isinstance(value, str):
        return fallback
    text = normalize_text(value)
    return text[:max_chars] if text else fallback


def to_bounded_int(value: Any, fallback: int, low: int, high: int) -> int:
    return clamp(to_safe_int(value, fallback), low, high)


def beat_id_for(turn_index: int, ordinal: int) -> str:
    """Deterministic beat id: ``b<turn+1>-<ordinal>`` (ordinal is 1-based)."""

    return f"b{turn_index + 1}-{ordinal}"


# ============================================================================
# Plan construction
# ============================================================================


def build_plan(
    raw: str,
    active_participants: Sequence[Participant],
    *,
    turn_index: int,
    preset_id: str,
    budget: Budget,
    max_events_per_beat: int = DEFAULT_MAX_EVENTS_PER_BEAT,
) -> Plan:
    """Validate a director response into a plan with ``trace.source = model``.

    Raises:
        PlanValidationError: ``director-invalid-json``, ``director-missing-beats``
            or ``director-no-valid-beats``
    """

    parsed = extract_json_object(raw)
    if parsed is None:
        raise PlanValidationError(DIRECTOR_INVALID_JSON)

    entries = parsed.get("beats")
    if not isinstance(entries, list) or not entries:
        raise PlanValidationError(DIRECTOR_MISSING_BEATS)

    active_ids = {participant.id for participant in active_participants}
    max_beats = len(active_participants)
    beats: List[Beat] = []
    planned: set[str] = set()

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        agent_id = entry.get("agent_id")
        agent_id = agent_id.strip() if isinstance(agent_id, str) else ""
        if not agent_id or agent_id not in active_ids or agent_id in planned:
            continue

        planned.add(agent_id)
        beats.append(
            Beat(
                beat_id=beat_id_for(turn_index, len(beats) + 1),
                participant_id=agent_id,
                intent=to_short_text(entry.get("intent"), DEFAULT_INTENT, MAX_INTENT_CHARS),
                allow_action=to_bool(entry.get("allow_action"), False),
                allow_thought=to_bool(entry.get("allow_thought"), False),
                tone_hint=to_short_text(
                    entry.get("tone_hint"), DEFAULT_TONE_HINT, MAX_TONE_HINT_CHARS
                ),
                max_events=to_bounded_int(entry.get("max_events"), max_events_per_beat, 1, 4),
            )
        )
        if len(beats) >= max_beats:
            break

    if not beats:
        raise PlanValidationError(DIRECTOR_NO_VALID_BEATS)

    return Plan(
        turn_index=turn_index,
        preset_id=preset_id,
        budgets=budget,
        beats=beats,
        trace=PlanTrace(source=PlanSource.MODEL, attempts=1),
    )


def build_fallback_plan(
    active_participants: Sequence[Participant],
    *,
    turn_index: int,
    preset_id: str,
    budget: Budget,
    reason: str,
    max_events_per_beat: int = FALLBACK_MAX_EVENTS_PER_BEAT,
) -> Plan:
    """One generic, permission-less beat per active participant."""

    beats = [
        Beat(
            beat_id=beat_id_for(turn_index, ordinal),
            participant_id=participant.id,
            intent=DEFAULT_INTENT,
            allow_action=False,
            allow_thought=False,
            tone_hint=DEFAULT_TONE_HINT,
            max_events=max_events_per_beat,
        )
        for ordinal, participant in enumerate(active_participants, start=1)
    ]
    return Plan(
        turn_index=turn_index,
        preset_id=preset_id,
        budgets=budget,
        beats=beats,
        trace=PlanTrace(source=PlanSource.FALLBACK, attempts=0, reason=reason),
    )


def permitted_director_attempts(budget: Budget) -> int:
    """Attempts the cascade may make: the budget clamped to [1, 3], at most one repair."""

    allowed = clamp(budget.max_director_attempts or 1, 1, MAX_DIRECTOR_ATTEMPTS_CEILING)
    return min(2, allowed)


# ============================================================================
# Acquisition cascade
# ============================================================================


class Director:
    """Acquires a plan for a turn from the director model."""

    def __init__(
        self,
        generator: TextGenerator,
        model: str,
        *,
        reasoning_effort: ReasoningEffort = ReasoningEffort.AUTO,
        prompts: PromptLibrary = DEFAULT_PROMPTS,
        tracer: Optional[Tracer] = None,
    ) -> None:
        self.generator = generator
        self.model = model
        self.reasoning_effort = reasoning_effort
        self.prompts = prompts
        self.tracer = tracer

    async def acquire_plan(self, context: TurnContext) -> Plan:
        """Run attempt -> repair -> fallback and return a usable plan.

        Only ``PlanValidationError`` triggers the repair. Generation errors
        propagate unchanged and abort the turn.
        """

        participants = context.participants
        director_messages = build_director_messages(
            user_name=context.user_name,
            user_message=context.user_message,
            goal=context.goal,
            summary_window=context.summary_window,
            history_lines=context.history_lines,
            participants=participants,
            preset_id=context.preset_id,
            preset_prompt=context.preset_prompt,
            budget=context.budget,
            max_agents=len(participants),
            library=self.prompts,
        )

        span = None
        if self.tracer is not None:
            span = self.tracer.start_span(
                "turn.director",
                input={
                    "messages": [message.as_dict() for message in director_messages],
                    "model": self.model,
                },
                metadata=context.trace_metadata(),
            )

        max_attempts = permitted_director_attempts(context.budget)
        attempts = 0
        raw = ""
        last_reason = ""

        async def attempt_plans() -> Plan:
            nonlocal attempts, raw, last_reason
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(PlanValidationError),
                stop=stop_after_attempt(max_attempts) | stop_when_deadline_passed(context.guard),
                reraise=True,
            ):
                with attempt:
                    attempts += 1
                    if attempts == 1:
                        request = GenerationRequest(
                            model=self.model,
                            messages=director_messages,
                            temperature=DIRECTOR_TEMPERATURE,
                            reasoning_effort=self.reasoning_effort,
                            trace=GenerationTrace(
                                name="turn.director", metadata=context.trace_metadata()
                            ),
                        )
                    else:
                        log_deterministic(
                            f"Director retry {attempts}/{max_attempts}: repairing ({last_reason})"
                        )
                        request = GenerationRequest(
                            model=self.model,
                            messages=build_director_repair_messages(
                                raw=raw,
                                reason=last_reason,
                                participants=participants,
                                max_agents=len(participants),
                                library=self.prompts,
                            ),
                            temperature=DIRECTOR_REPAIR_TEMPERATURE,
                            reasoning_effort=self.reasoning_effort,
                            trace=GenerationTrace(
                                name="turn.director-repair", metadata=context.trace_metadata()
                            ),
                        )
                    raw = await self.generator(request)
                    try:
                        return build_plan(
                            raw,
                            participants,
                            turn_index=context.turn_index,
                            preset_id=context.preset_id,
                            budget=context.budget,
                        )
                    except PlanValidationError as exc:
                        last_reason = exc.reason
                        raise
            # reraise=True means the loop exits only by return or raise
            raise RuntimeError("Director retry loop exited unexpectedly")

        try:
            plan = await attempt_plans()
        except PlanValidationError:
            if attempts < max_attempts:
                context.note(f"director-retry-skipped:{LATENCY_SKIP_REASON}")
            plan = build_fallback_plan(
                participants,
                turn_index=context.turn_index,
                preset_id=context.preset_id,
                budget=context.budget,
                reason=last_reason,
            )
            context.note(f"director-fallback:{last_reason}")
        except Exception:
            if span is not None:
                span.update(output={"error": "generation-failed"}, metadata={"attempts": attempts})
                span.end()
            raise
        else:
            source = PlanSource.MODEL if attempts == 1 else PlanSource.REPAIR
            plan = plan.model_copy(update={"trace": PlanTrace(source=source, attempts=attempts)})
            log_success(
                f"Director plan ({source.value}, attempts={attempts}): "
                + ", ".join(f"{beat.participant_id}:{beat.intent}" for beat in plan.beats)
            )

        if span is not None:
            span.update(
                output=plan.model_dump(mode="json", by_alias=True),
                metadata={"attempts": attempts, "beat_count": len(plan.beats)},
            )
            span.end()
        return plan


__all__ = [
    "Director",
    "PlanValidationError",
    "build_plan",
    "build_fallback_plan",
    "extract_json_object",
    "permitted_director_attempts",
]
