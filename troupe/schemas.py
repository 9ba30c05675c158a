"""
Pydantic schemas for the troupe turn engine.

All data structures that cross a component boundary are defined here.

Design Philosophy:
- Closed enums for every polymorphic tag (event type, visibility, origin, plan
  source) so each consumer can match exhaustively
- Wire models (events, beats, plans, budgets) serialize with camelCase field
  names; the persisted room state keeps snake_case keys
- Events are frozen once constructed; caps produce copies, never mutate
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


# Versions carried on every event and plan. A compatible reimplementation must
# keep emitting these values unchanged.
THEATRICAL_CONTRACT_VERSION = 1
THEATRICAL_EVENT_SCHEMA_VERSION = 1


# ============================================================================
# Enumerations
# ============================================================================


class EventType(str, Enum):
    """The three kinds of theatrical event a participant may emit."""

    SPEAK = "speak"
    ACTION = "action"
    THOUGHT = "thought"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


def default_visibility(event_type: EventType) -> Visibility:
    if event_type is EventType.THOUGHT:
        return Visibility.PRIVATE
    if event_type in (EventType.SPEAK, EventType.ACTION):
        return Visibility.PUBLIC
    raise ValueError(f"Unknown event type: {event_type!r}")


def default_intensity(event_type: EventType) -> int:
    if event_type is EventType.SPEAK:
        return 2
    if event_type in (EventType.ACTION, EventType.THOUGHT):
        return 3
    raise ValueError(f"Unknown event type: {event_type!r}")


class EventOrigin(str, Enum):
    """Who produced an event: the participant, the director safety net, or a repair pass."""

    PARTICIPANT = "participant"
    DIRECTOR = "director"
    REPAIR = "repair"


class PlanSource(str, Enum):
    """Stage of the plan acquisition cascade that produced the plan."""

    MODEL = "model"
    REPAIR = "repair"
    FALLBACK = "fallback"


class MessageRole(str, Enum):
    USER = "user"
    AGENT = "agent"


class UserTier(str, Enum):
    BASE = "BASE"
    PRO = "PRO"
    MAX = "MAX"


class ReasoningEffort(str, Enum):
    """Reasoning effort setting; AUTO means the parameter is not sent at all."""

    AUTO = "auto"
    NONE = "none"
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    XHIGH = "xhigh"


# ============================================================================
# Wire Schemas (events, beats, plans)
# ============================================================================


class WireModel(BaseModel):
    """Base for models whose JSON form uses camelCase keys.

    Fields are declared snake_case and accept either spelling on input, so
    payloads written by older hosts (or by hand in tests) validate unchanged.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TheatricalEvent(WireModel):
    """One atomic utterance, physical action or private thought.

    Events are created by parsing a generation response (see
    ``troupe.events.parse_event_stream``) or by a fallback constructor. Once a
    turn accepts an event it is never mutated; the budget ledger may replace it
    with a truncated copy exactly once, before acceptance.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: EventType = Field(..., description="speak | action | thought")
    author: str = Field(..., min_length=1, description="Display name of the producing participant")
    content: str = Field(..., min_length=1, description="Whitespace-normalised event text")
    event_id: str = Field(..., description="Unique within a turn")
    beat_id: str = Field(..., description="Beat that produced this event")
    schema_version: int = Field(THEATRICAL_EVENT_SCHEMA_VERSION, ge=1)
    visibility: Visibility = Field(Visibility.PUBLIC)
    intensity: int = Field(2, ge=1, le=5)
    origin: EventOrigin = Field(EventOrigin.PARTICIPANT)

    @model_validator(mode="before")
    @classmethod
    def fill_type_defaults(cls, data: Any) -> Any:
        # Thoughts are private and non-speak events sit at intensity 3 unless told otherwise
        if not isinstance(data, dict):
            return data
        try:
            event_type = EventType(data.get("type"))
        except ValueError:
            return data
        filled = dict(data)
        if filled.get("visibility") is None:
            filled["visibility"] = default_visibility(event_type)
        if filled.get("intensity") is None:
            filled["intensity"] = default_intensity(event_type)
        return filled


class Beat(WireModel):
    """One participant's bounded unit of work within a turn.

    ``beat_id`` has the form ``b<turn+1>-<ordinal>`` so events can be traced
    back to the plan position that produced them.
    """

    beat_id: str
    participant_id: str
    intent: str = "respond-helpfully"
    allow_action: bool = False
    allow_thought: bool = False
    tone_hint: str = "balanced"
    max_events: int = Field(2, ge=1, le=4)


class Budget(WireModel):
    """Per-turn numeric limits. Immutable input; all values are non-negative."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    max_director_attempts: int = Field(2, ge=0)
    max_action_events_per_turn: int = Field(2, ge=0)
    max_thought_events_per_turn: int = Field(2, ge=0)
    # 0 disables truncation
    max_thought_chars_per_event: int = Field(240, ge=0)
    # 0 means no latency deadline
    target_p95_turn_latency_ms: int = Field(0, ge=0)


class PlanTrace(WireModel):
    source: PlanSource
    attempts: int = Field(..., ge=0)
    reason: Optional[str] = None


class Plan(WireModel):
    """The director's ordered list of beats for one turn, plus provenance.

    Invariants (enforced by ``troupe.director``): beats reference only active
    participants, each participant appears at most once, and there are never
    more beats than active participants.
    """

    contract_version: int = THEATRICAL_CONTRACT_VERSION
    schema_version: int = THEATRICAL_EVENT_SCHEMA_VERSION
    turn_index: int = Field(..., ge=0)
    preset_id: str
    budgets: Budget
    beats: List[Beat] = Field(default_factory=list)
    trace: PlanTrace


# ============================================================================
# Cast Schemas
# ============================================================================


class Participant(BaseModel):
    """A persona with identity, display name and behavioural bio."""

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    bio: str = ""
    traits: Optional[str] = None


class ModelAssignment(BaseModel):
    """Which model each participant speaks through (participant id -> model id)."""

    participant_models: Dict[str, str] = Field(default_factory=dict)


# ============================================================================
# Room State Schemas (persisted)
# ============================================================================


class SharedMessage(BaseModel):
    """One entry of the shared conversation history."""

    role: MessageRole
    agent_id: Optional[str] = None
    text: str
    turn_index: int = Field(..., ge=0)


class SharedState(BaseModel):
    """Conversation content shared by the whole cast.

    Mutated only at turn boundaries. ``agent_memory`` holds each participant's
    private notes, oldest first, capped at the most recent 12 entries.
    """

    goal: str = ""
    summary_window: str = ""
    last_messages: List[SharedMessage] = Field(default_factory=list)
    agent_memory: Dict[str, List[str]] = Field(default_factory=dict)
    turn_index: int = Field(0, ge=0)


class SpeakerStep(BaseModel):
    agent_id: str
    intent: str


class SpeakerOutput(BaseModel):
    agent_id: str
    intent: str
    text: str
    step_index: int = Field(..., ge=0)


class RuntimeState(BaseModel):
    """Turn bookkeeping used only for diagnostics and replay."""

    turn_index: int = Field(0, ge=0)
    speaker_plan: List[SpeakerStep] = Field(default_factory=list)
    speaker_outputs: List[SpeakerOutput] = Field(default_factory=list)
    last_user_message: Optional[str] = None
    turn_trace: List[str] = Field(default_factory=list)
    # Ring of the most recent plans, oldest first
    director_plan_history: List[Plan] = Field(default_factory=list)
    theatrical_contract_version: Optional[int] = None


class RoomState(BaseModel):
    """The opaque document a state store loads and saves per conversation."""

    shared: SharedState = Field(default_factory=SharedState)
    runtime: RuntimeState = Field(default_factory=RuntimeState)
