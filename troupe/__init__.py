"""
Troupe - a turn engine for directed multi-persona conversations.

A director model plans one beat per participant, each participant answers its
beat with a short stream of typed events (speak, action, thought), and the
engine enforces budgets, repairs or replaces malformed output and keeps the
room's shared state compact between turns.

All dependencies (generator, state store, tracer) are injected by the host.
"""

__version__ = "0.1.0"

# Main turn engine
from .orchestrator import (
    Orchestrator,
    TurnRequest,
    TurnResult,
    TurnPhase,
    TurnInputError,
    EmptyMessageError,
    NoParticipantsError,
)

# Components
from .director import Director, PlanValidationError, build_plan, build_fallback_plan
from .speaker import BeatExecutor, TurnAccumulator
from .compaction import StateCompactor
from .latency import LatencyGuard
from .events import (
    EventStreamError,
    BudgetLedger,
    parse_event_stream,
    dedupe,
    apply_budget_caps,
    to_ndjson,
)
from .prompts import PromptTemplate, PromptLibrary, DEFAULT_PROMPTS

# Generation
from .llm import (
    ChatMessage,
    GenerationRequest,
    GenerationError,
    MirascopeGenerator,
    TextGenerator,
)
from .local_llm import LocalLLMError
from .tracing import NullTracer, TraceContext, Tracer

# Storage
from .persistence import (
    StateStore,
    InMemoryStateStore,
    JsonStateStore,
    PostgresStateStore,
    ModelAssignmentStore,
    InMemoryAssignmentStore,
    create_initial_room_state,
)

# Core schemas
from .schemas import (
    TheatricalEvent,
    Beat,
    Plan,
    PlanTrace,
    Budget,
    Participant,
    SharedState,
    RuntimeState,
    RoomState,
    EventType,
    Visibility,
    EventOrigin,
    PlanSource,
    UserTier,
    ReasoningEffort,
)

# Stage loader helpers
from .scenario import load_stage, Stage, StageLoader

__all__ = [
    # Turn engine
    "Orchestrator",
    "TurnRequest",
    "TurnResult",
    "TurnPhase",
    "TurnInputError",
    "EmptyMessageError",
    "NoParticipantsError",
    # Components
    "Director",
    "PlanValidationError",
    "build_plan",
    "build_fallback_plan",
    "BeatExecutor",
    "TurnAccumulator",
    "StateCompactor",
    "LatencyGuard",
    "EventStreamError",
    "BudgetLedger",
    "parse_event_stream",
    "dedupe",
    "apply_budget_caps",
    "to_ndjson",
    "PromptTemplate",
    "PromptLibrary",
    "DEFAULT_PROMPTS",
    # Generation
    "ChatMessage",
    "GenerationRequest",
    "GenerationError",
    "MirascopeGenerator",
    "TextGenerator",
    "LocalLLMError",
    "NullTracer",
    "TraceContext",
    "Tracer",
    # Storage
    "StateStore",
    "InMemoryStateStore",
    "JsonStateStore",
    "PostgresStateStore",
    "ModelAssignmentStore",
    "InMemoryAssignmentStore",
    "create_initial_room_state",
    # Schemas
    "TheatricalEvent",
    "Beat",
    "Plan",
    "PlanTrace",
    "Budget",
    "Participant",
    "SharedState",
    "RuntimeState",
    "RoomState",
    "EventType",
    "Visibility",
    "EventOrigin",
    "PlanSource",
    "UserTier",
    "ReasoningEffort",
    # Stage helpers
    "load_stage",
    "Stage",
    "StageLoader",
]
