"""
Event model operations: parsing, sanitisation, deduplication and budget caps.

A participant's generation response is newline-delimited JSON (NDJSON), one
event object per line. Parsing is strict-but-forgiving and single pass: every
line is validated independently, optional fields fall back to documented
defaults, and a single bad line fails the whole batch. Callers recover at a
higher level (repair call, fallback event), never by skipping lines.

Budget enforcement is expressed once, in ``BudgetLedger``. The ledger is an
explicit accumulator that the turn pipeline threads through every beat so caps
and dedup apply across the whole turn in emission order (first seen wins).
``apply_budget_caps`` runs a fresh ledger over a finished list.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Iterable, List, Optional, Set, Tuple

from .schemas import (
    THEATRICAL_EVENT_SCHEMA_VERSION,
    Budget,
    EventOrigin,
    EventType,
    TheatricalEvent,
    Visibility,
    default_intensity,
    default_visibility,
)


# Reason codes reported by parse_event_stream
EMPTY_OUTPUT = "empty-output"
INVALID_JSON_LINE = "invalid-json-line"
INVALID_TYPE = "invalid-type"
MISSING_AUTHOR = "missing-author"
EMPTY_CONTENT = "empty-content"
NO_EVENTS = "no-events"

# Public thoughts shorter than this are too slight to summarise
SUMMARY_MIN_THOUGHT_CHARS = 24

_HORIZONTAL_WS = re.compile(r"[ \t]+")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


class EventStreamError(ValueError):
    """Raised when a generation response cannot be parsed into events.

    ``reason`` is one of the module-level reason codes (``empty-output``,
    ``invalid-json-line``, ...). The repair prompt echoes it back to the model.
    """

    def __init__(self, reason: str, *, line: Optional[str] = None) -> None:
        self.reason = reason
        self.line = line
        message = f"Event stream rejected: {reason}"
        if line:
            message += f" (line: {line[:80]!r})"
        super().__init__(message)


# ============================================================================
# Normalisation helpers
# ============================================================================


def normalize_text(value: str) -> str:
    """Collapse runs of spaces/tabs, cap blank-line runs at one, trim."""

    value = _HORIZONTAL_WS.sub(" ", value)
    value = _EXCESS_NEWLINES.sub("\n\n", value)
    return value.strip()


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def to_safe_int(value: Any, fallback: int) -> int:
    """Coerce numbers and numeric strings to an int (floored); else ``fallback``."""

    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return fallback
    else:
        return fallback
    if not math.isfinite(number):
        return fallback
    return math.floor(number)


def _text_field(record: dict, key: str) -> str:
    value = record.get(key)
    return value.strip() if isinstance(value, str) else ""


def _enum_field(record: dict, key: str, enum_cls, fallback):
    value = record.get(key)
    if isinstance(value, str):
        try:
            return enum_cls(value)
        except ValueError:
            return fallback
    return fallback


# ============================================================================
# Event identity
# ============================================================================


class EventIdFactory:
    """Per-turn event id generator (``<prefix>-1``, ``<prefix>-2``, ...).

    Every id handed out or claimed is remembered, so an id is issued at most
    once per turn whether it came from the counter or from model output.
    """

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix
        self.counter = 0
        self.taken: Set[str] = set()

    def __call__(self) -> str:
        while True:
            self.counter += 1
            candidate = f"{self.prefix}-{self.counter}"
            if candidate not in self.taken:
                self.taken.add(candidate)
                return candidate

    def claim(self, candidate: str) -> str:
        """Reserve a supplied id, or issue a fresh one if it is blank or already used."""
        if not candidate or candidate in self.taken:
            return self()
        self.taken.add(candidate)
        return candidate


# ============================================================================
# Parsing
# ============================================================================


def parse_event_stream(
    raw: str,
    *,
    default_author: str,
    default_beat_id: str,
    origin: EventOrigin = EventOrigin.PARTICIPANT,
    next_event_id: EventIdFactory,
) -> List[TheatricalEvent]:
    """Parse an NDJSON generation response into validated events.

    Args:
        raw: Generation output, one JSON object per non-blank line
        default_author: Author used when a line omits ``author``
        default_beat_id: Beat id used when a line omits ``beatId``
        origin: Origin assigned when a line omits (or garbles) ``origin``
        next_event_id: Turn id factory; supplied ``eventId`` values are claimed
            through it and replaced when blank or already used

    Returns:
        One event per line, in input order

    Raises:
        EventStreamError: On the first malformed line, or if nothing parses
    """

    trimmed = raw.strip() if raw else ""
    if not trimmed:
        raise EventStreamError(EMPTY_OUTPUT)

    lines = [line.strip() for line in trimmed.split("\n")]
    parsed: List[Tuple[str, dict]] = []
    for line in lines:
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            raise EventStreamError(INVALID_JSON_LINE, line=line) from None
        if not isinstance(record, dict):
            raise EventStreamError(INVALID_JSON_LINE, line=line)

        event_type = _enum_field(record, "type", EventType, None)
        if event_type is None:
            raise EventStreamError(INVALID_TYPE, line=line)

        author = _text_field(record, "author") or default_author.strip()
        if not author:
            raise EventStreamError(MISSING_AUTHOR, line=line)

        content_raw = record.get("content")
        content = normalize_text(content_raw) if isinstance(content_raw, str) else ""
        if not content:
            raise EventStreamError(EMPTY_CONTENT, line=line)

        parsed.append(
            (
                _text_field(record, "eventId"),
                dict(
                    type=event_type,
                    author=author,
                    content=content,
                    beat_id=_text_field(record, "beatId") or default_beat_id,
                    schema_version=clamp(
                        to_safe_int(record.get("schemaVersion"), THEATRICAL_EVENT_SCHEMA_VERSION),
                        1,
                        1000,
                    ),
                    visibility=_enum_field(
                        record, "visibility", Visibility, default_visibility(event_type)
                    ),
                    intensity=clamp(
                        to_safe_int(record.get("intensity"), default_intensity(event_type)), 1, 5
                    ),
                    origin=_enum_field(record, "origin", EventOrigin, origin),
                ),
            )
        )

    if not parsed:
        raise EventStreamError(NO_EVENTS)
    # Ids are reserved only once the whole batch is accepted
    return [
        TheatricalEvent(event_id=next_event_id.claim(supplied_id), **fields)
        for supplied_id, fields in parsed
    ]


def build_fallback_speak_event(
    *,
    author: str,
    content: str,
    beat_id: str,
    event_id: str,
    origin: EventOrigin = EventOrigin.PARTICIPANT,
) -> TheatricalEvent:
    """Construct the single public speak event used when a beat degrades."""

    return TheatricalEvent(
        type=EventType.SPEAK,
        author=author,
        content=normalize_text(content),
        event_id=event_id,
        beat_id=beat_id,
        schema_version=THEATRICAL_EVENT_SCHEMA_VERSION,
        visibility=Visibility.PUBLIC,
        intensity=2,
        origin=origin,
    )


# ============================================================================
# Deduplication and budget caps
# ============================================================================


def dedupe_key(event: TheatricalEvent) -> str:
    return f"{event.author.lower()}|{event.type.value}|{event.content.lower()}"


def dedupe(events: Iterable[TheatricalEvent]) -> List[TheatricalEvent]:
    """Drop exact-duplicate action/thought events (case-insensitive).

    Speak events are never deduplicated; repeated lines are a content-quality
    concern, not a structural one.
    """

    seen: set[str] = set()
    result: List[TheatricalEvent] = []
    for event in events:
        if event.type is EventType.SPEAK:
            result.append(event)
            continue
        key = dedupe_key(event)
        if key in seen:
            continue
        seen.add(key)
        result.append(event)
    return result


class BudgetLedger:
    """Turn-scoped accumulator for action/thought caps and cross-beat dedup.

    One ledger exists per turn, owned by the turn pipeline. ``admit`` is called
    in emission order; an event rejected here never reaches history, memory or
    callbacks.
    """

    def __init__(self, budget: Budget) -> None:
        self.budget = budget
        self.action_count = 0
        self.thought_count = 0
        self._seen: set[str] = set()

    def admit(self, event: TheatricalEvent) -> Optional[TheatricalEvent]:
        """Return the event to accept (possibly truncated), or None to drop it."""

        if event.type is EventType.SPEAK:
            return event

        if event.type is EventType.ACTION:
            if self.action_count >= self.budget.max_action_events_per_turn:
                return None
            key = dedupe_key(event)
            if key in self._seen:
                return None
            self._seen.add(key)
            self.action_count += 1
            return event

        if event.type is EventType.THOUGHT:
            if self.thought_count >= self.budget.max_thought_events_per_turn:
                return None
            key = dedupe_key(event)
            if key in self._seen:
                return None
            self._seen.add(key)
            self.thought_count += 1
            return self._truncate_thought(event)

        raise ValueError(f"Unknown event type: {event.type!r}")

    def _truncate_thought(self, event: TheatricalEvent) -> Optional[TheatricalEvent]:
        max_chars = self.budget.max_thought_chars_per_event
        if not max_chars or len(event.content) <= max_chars:
            return event
        clipped = event.content[:max_chars].rstrip()
        if not clipped:
            return None
        return event.model_copy(update={"content": clipped})


def apply_budget_caps(events: Iterable[TheatricalEvent], budget: Budget) -> List[TheatricalEvent]:
    """Dedupe, then cap action/thought counts and thought length for one turn.

    Speak events pass through uncapped. Ordering is first-seen-wins.
    """

    ledger = BudgetLedger(budget)
    capped: List[TheatricalEvent] = []
    for event in dedupe(events):
        admitted = ledger.admit(event)
        if admitted is not None:
            capped.append(admitted)
    return capped


# ============================================================================
# Partition views
# ============================================================================


def enters_history(event: TheatricalEvent) -> bool:
    """Whether an event adds a line to the running/shared conversation history."""

    if event.type in (EventType.SPEAK, EventType.ACTION):
        return True
    if event.type is EventType.THOUGHT:
        return False
    raise ValueError(f"Unknown event type: {event.type!r}")


def events_for_public_history(events: Iterable[TheatricalEvent]) -> List[TheatricalEvent]:
    """Everything except private thoughts."""

    result: List[TheatricalEvent] = []
    for event in events:
        if event.type in (EventType.SPEAK, EventType.ACTION):
            result.append(event)
        elif event.type is EventType.THOUGHT:
            if event.visibility is Visibility.PUBLIC:
                result.append(event)
        else:
            raise ValueError(f"Unknown event type: {event.type!r}")
    return result


def events_for_private_memory(
    events: Iterable[TheatricalEvent], author: Optional[str] = None
) -> List[TheatricalEvent]:
    """Thought events, optionally restricted to one author's own."""

    return [
        event
        for event in events
        if event.type is EventType.THOUGHT and (author is None or event.author == author)
    ]


def events_for_summarizer(events: Iterable[TheatricalEvent]) -> List[TheatricalEvent]:
    """Events meaningful enough to feed compaction.

    Speak always qualifies; actions need intensity >= 2; thoughts must be
    public and at least ``SUMMARY_MIN_THOUGHT_CHARS`` long.
    """

    result: List[TheatricalEvent] = []
    for event in events:
        if event.type is EventType.SPEAK:
            result.append(event)
        elif event.type is EventType.ACTION:
            if event.intensity >= 2:
                result.append(event)
        elif event.type is EventType.THOUGHT:
            if (
                event.visibility is Visibility.PUBLIC
                and len(event.content) >= SUMMARY_MIN_THOUGHT_CHARS
            ):
                result.append(event)
        else:
            raise ValueError(f"Unknown event type: {event.type!r}")
    return result


# ============================================================================
# Rendering and serialisation
# ============================================================================


def event_to_history_line(event: TheatricalEvent) -> str:
    if event.type is EventType.SPEAK:
        return f"{event.author}: {event.content}"
    if event.type is EventType.ACTION:
        return f"{event.author} (action): {event.content}"
    if event.type is EventType.THOUGHT:
        return f"{event.author} (thought): {event.content}"
    raise ValueError(f"Unknown event type: {event.type!r}")


def serialize_event(event: TheatricalEvent) -> str:
    """One event as a single compact JSON line with wire (camelCase) keys."""

    return event.model_dump_json(by_alias=True)


def to_ndjson(events: Iterable[TheatricalEvent]) -> str:
    return "\n".join(serialize_event(event) for event in events)


def count_events_by_type(events: Iterable[TheatricalEvent]) -> dict[str, int]:
    counts = {event_type.value: 0 for event_type in EventType}
    for event in events:
        counts[event.type.value] += 1
    return counts


__all__ = [
    "EventStreamError",
    "EventIdFactory",
    "BudgetLedger",
    "normalize_text",
    "parse_event_stream",
    "build_fallback_speak_event",
    "dedupe",
    "apply_budget_caps",
    "enters_history",
    "events_for_public_history",
    "events_for_private_memory",
    "events_for_summarizer",
    "event_to_history_line",
    "serialize_event",
    "to_ndjson",
    "count_events_by_type",
]
