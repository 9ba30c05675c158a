"""Tests for event parsing, caps, dedup and partition views."""

import json

import pytest

from troupe.events import (
    BudgetLedger,
    EventIdFactory,
    EventStreamError,
    apply_budget_caps,
    build_fallback_speak_event,
    count_events_by_type,
    dedupe,
    event_to_history_line,
    events_for_private_memory,
    events_for_public_history,
    events_for_summarizer,
    normalize_text,
    parse_event_stream,
    serialize_event,
    to_ndjson,
)
from troupe.schemas import Budget, EventOrigin, EventType, TheatricalEvent, Visibility

from conftest import ndjson


def parse(raw: str, **kwargs):
    options = dict(
        default_author="Ada",
        default_beat_id="b1-1",
        next_event_id=EventIdFactory("t1"),
    )
    options.update(kwargs)
    return parse_event_stream(raw, **options)


def make_event(event_type: EventType, content: str, author: str = "Ada", **extra) -> TheatricalEvent:
    return TheatricalEvent(
        type=event_type,
        author=author,
        content=content,
        event_id=extra.pop("event_id", f"e-{content[:8]}"),
        beat_id=extra.pop("beat_id", "b1-1"),
        **extra,
    )


def test_normalize_text_collapses_whitespace():
    assert normalize_text("  hello \t  there\n\n\n\nfriend  ") == "hello there\n\nfriend"


def test_parse_applies_defaults_per_type():
    raw = ndjson(
        {"type": "speak", "content": "Hello"},
        {"type": "action", "content": "waves"},
        {"type": "thought", "content": "They look tired"},
    )
    events = parse(raw)

    assert [event.type for event in events] == [EventType.SPEAK, EventType.ACTION, EventType.THOUGHT]
    assert [event.visibility for event in events] == [
        Visibility.PUBLIC,
        Visibility.PUBLIC,
        Visibility.PRIVATE,
    ]
    assert [event.intensity for event in events] == [2, 3, 3]
    assert [event.event_id for event in events] == ["t1-1", "t1-2", "t1-3"]
    assert all(event.author == "Ada" for event in events)
    assert all(event.beat_id == "b1-1" for event in events)
    assert all(event.origin is EventOrigin.PARTICIPANT for event in events)
    assert all(event.schema_version == 1 for event in events)


def test_parse_keeps_explicit_fields_and_clamps_intensity():
    raw = ndjson(
        {
            "type": "thought",
            "author": "Bo",
            "content": "  spaced   out  ",
            "visibility": "public",
            "intensity": 9,
            "eventId": "custom-1",
            "beatId": "b1-2",
            "origin": "repair",
        },
        {"type": "speak", "content": "low", "intensity": "-3"},
    )
    events = parse(raw)

    assert events[0].author == "Bo"
    assert events[0].content == "spaced out"
    assert events[0].visibility is Visibility.PUBLIC
    assert events[0].intensity == 5
    assert events[0].event_id == "custom-1"
    assert events[0].beat_id == "b1-2"
    assert events[0].origin is EventOrigin.REPAIR
    assert events[1].intensity == 1


def test_parse_uses_origin_hint_and_ignores_unknown_enum_values():
    raw = ndjson({"type": "speak", "content": "Hi", "visibility": "loud", "origin": "narrator"})
    (event,) = parse(raw, origin=EventOrigin.REPAIR)

    assert event.visibility is Visibility.PUBLIC
    assert event.origin is EventOrigin.REPAIR


def test_parse_skips_blank_lines():
    raw = '\n{"type":"speak","content":"one"}\n\n   \n{"type":"speak","content":"two"}\n'
    assert [event.content for event in parse(raw)] == ["one", "two"]


@pytest.mark.parametrize(
    "raw, reason",
    [
        ("", "empty-output"),
        ("   \n  ", "empty-output"),
        ('{"type":"speak","content":"ok"}\nnot json', "invalid-json-line"),
        ('["speak"]', "invalid-json-line"),
        ('{"type":"narrate","content":"ok"}', "invalid-type"),
        ('{"content":"ok"}', "invalid-type"),
        ('{"type":"speak","content":"   "}', "empty-content"),
        ('{"type":"speak"}', "empty-content"),
    ],
)
def test_parse_rejects_malformed_batches(raw, reason):
    with pytest.raises(EventStreamError) as excinfo:
        parse(raw)
    assert excinfo.value.reason == reason


def test_parse_missing_author_without_default():
    with pytest.raises(EventStreamError) as excinfo:
        parse('{"type":"speak","content":"hi","author":"  "}', default_author=" ")
    assert excinfo.value.reason == "missing-author"


def test_fallback_speak_event_is_public_speak():
    event = build_fallback_speak_event(
        author="Ada", content="  I   am here. ", beat_id="b1-1", event_id="t1-9"
    )
    assert event.type is EventType.SPEAK
    assert event.visibility is Visibility.PUBLIC
    assert event.content == "I am here."
    assert event.origin is EventOrigin.PARTICIPANT


def test_dedupe_is_case_insensitive_and_keeps_speak_repeats():
    events = [
        make_event(EventType.SPEAK, "Hello", event_id="1"),
        make_event(EventType.SPEAK, "hello", event_id="2"),
        make_event(EventType.ACTION, "Waves", event_id="3"),
        make_event(EventType.ACTION, "waves", author="ADA", event_id="4"),
        make_event(EventType.ACTION, "waves", author="Bo", event_id="5"),
        make_event(EventType.THOUGHT, "hmm", event_id="6"),
        make_event(EventType.THOUGHT, "HMM", event_id="7"),
    ]

    result = dedupe(events)

    assert [event.event_id for event in result] == ["1", "2", "3", "5", "6"]
    assert dedupe(result) == result


def test_apply_budget_caps_limits_counts_first_seen_wins():
    budget = Budget(max_action_events_per_turn=1, max_thought_events_per_turn=2)
    events = [
        make_event(EventType.ACTION, "first action", event_id="a1"),
        make_event(EventType.SPEAK, "line", event_id="s1"),
        make_event(EventType.ACTION, "second action", event_id="a2"),
        make_event(EventType.THOUGHT, "one", event_id="t1"),
        make_event(EventType.THOUGHT, "two", event_id="t2"),
        make_event(EventType.THOUGHT, "three", event_id="t3"),
        make_event(EventType.SPEAK, "line", event_id="s2"),
    ]

    result = apply_budget_caps(events, budget)

    assert [event.event_id for event in result] == ["a1", "s1", "t1", "t2", "s2"]


def test_apply_budget_caps_zero_means_none_allowed():
    budget = Budget(max_action_events_per_turn=0, max_thought_events_per_turn=0)
    events = [
        make_event(EventType.ACTION, "act", event_id="a1"),
        make_event(EventType.THOUGHT, "think", event_id="t1"),
        make_event(EventType.SPEAK, "talk", event_id="s1"),
    ]
    assert [event.event_id for event in apply_budget_caps(events, budget)] == ["s1"]


def test_apply_budget_caps_truncates_thoughts_and_rstrips():
    budget = Budget(max_thought_chars_per_event=10)
    event = make_event(EventType.THOUGHT, "abcd      efghijklmnop", event_id="t1")

    (capped,) = apply_budget_caps([event], budget)

    assert capped.content == "abcd"
    assert len(capped.content) <= 10
    assert event.content == "abcd      efghijklmnop"


def test_apply_budget_caps_zero_chars_disables_truncation():
    budget = Budget(max_thought_chars_per_event=0)
    event = make_event(EventType.THOUGHT, "x" * 500, event_id="t1")
    (capped,) = apply_budget_caps([event], budget)
    assert len(capped.content) == 500


def test_apply_budget_caps_bounds_large_inputs():
    budget = Budget(max_action_events_per_turn=3, max_thought_events_per_turn=2, max_thought_chars_per_event=5)
    events = [make_event(EventType.ACTION, f"act {i}", event_id=f"a{i}") for i in range(50)]
    events += [make_event(EventType.THOUGHT, f"thought number {i}", event_id=f"t{i}") for i in range(50)]

    counts = count_events_by_type(apply_budget_caps(events, budget))

    assert counts == {"speak": 0, "action": 3, "thought": 2}


def test_ledger_dedup_spans_calls():
    ledger = BudgetLedger(Budget(max_action_events_per_turn=5))
    first = make_event(EventType.ACTION, "nods", event_id="a1")
    again = make_event(EventType.ACTION, "Nods", event_id="a2", beat_id="b1-2")

    assert ledger.admit(first) is first
    assert ledger.admit(again) is None
    assert ledger.action_count == 1


def test_partition_views():
    private = make_event(EventType.THOUGHT, "secret plan for later", event_id="t1")
    public_short = make_event(EventType.THOUGHT, "hm", visibility=Visibility.PUBLIC, event_id="t2")
    public_long = make_event(
        EventType.THOUGHT, "a public musing of some length", visibility=Visibility.PUBLIC, event_id="t3"
    )
    low_action = make_event(EventType.ACTION, "blinks", intensity=1, event_id="a1")
    action = make_event(EventType.ACTION, "stands", event_id="a2")
    line = make_event(EventType.SPEAK, "Hi", intensity=1, event_id="s1")
    other_thought = make_event(EventType.THOUGHT, "bo's thought", author="Bo", event_id="t4")
    events = [private, public_short, public_long, low_action, action, line, other_thought]

    assert [e.event_id for e in events_for_public_history(events)] == ["t2", "t3", "a1", "a2", "s1"]
    assert [e.event_id for e in events_for_private_memory(events, "Ada")] == ["t1", "t2", "t3"]
    assert [e.event_id for e in events_for_summarizer(events)] == ["t3", "a2", "s1"]


def test_event_model_fills_defaults_from_type():
    thought = make_event(EventType.THOUGHT, "quietly")
    action = make_event(EventType.ACTION, "shrugs")
    line = make_event(EventType.SPEAK, "Hello")

    assert (thought.visibility, thought.intensity) == (Visibility.PRIVATE, 3)
    assert (action.visibility, action.intensity) == (Visibility.PUBLIC, 3)
    assert (line.visibility, line.intensity) == (Visibility.PUBLIC, 2)

    loaded = TheatricalEvent.model_validate(
        {"type": "thought", "author": "Ada", "content": "hm", "eventId": "t1-1", "beatId": "b1-1"}
    )
    assert loaded.visibility is Visibility.PRIVATE

    shown = make_event(EventType.THOUGHT, "aloud", visibility=Visibility.PUBLIC, intensity=1)
    assert (shown.visibility, shown.intensity) == (Visibility.PUBLIC, 1)


def test_parse_replaces_duplicate_supplied_event_ids():
    factory = EventIdFactory("t1")
    raw = ndjson(
        {"type": "speak", "content": "one", "eventId": "t1-1"},
        {"type": "speak", "content": "two", "eventId": "t1-1"},
        {"type": "speak", "content": "three"},
    )
    events = parse(raw, next_event_id=factory)

    ids = [event.event_id for event in events]
    assert ids[0] == "t1-1"
    assert len(set(ids)) == 3


def test_event_id_factory_skips_claimed_ids():
    factory = EventIdFactory("t1")
    assert factory.claim("t1-2") == "t1-2"
    assert factory() == "t1-1"
    assert factory() == "t1-3"
    assert factory.claim("t1-3") == "t1-4"
    assert factory.claim("") == "t1-5"


def test_failed_parse_reserves_no_ids():
    factory = EventIdFactory("t1")
    with pytest.raises(EventStreamError):
        parse(
            ndjson({"type": "speak", "content": "ok", "eventId": "t1-7"}, {"type": "bogus", "content": "x"}),
            next_event_id=factory,
        )

    (event,) = parse(ndjson({"type": "speak", "content": "ok", "eventId": "t1-7"}), next_event_id=factory)
    assert event.event_id == "t1-7"


def test_history_lines_and_serialization():
    line = make_event(EventType.SPEAK, "Hello", event_id="t1-1")
    action = make_event(EventType.ACTION, "waves", event_id="t1-2")
    thought = make_event(EventType.THOUGHT, "hmm", event_id="t1-3")

    assert event_to_history_line(line) == "Ada: Hello"
    assert event_to_history_line(action) == "Ada (action): waves"
    assert event_to_history_line(thought) == "Ada (thought): hmm"

    payload = json.loads(serialize_event(line))
    assert payload["eventId"] == "t1-1"
    assert payload["beatId"] == "b1-1"
    assert payload["schemaVersion"] == 1
    assert payload["type"] == "speak"
    assert payload["origin"] == "participant"

    assert len(to_ndjson([line, action]).split("\n")) == 2
