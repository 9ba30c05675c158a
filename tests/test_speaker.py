"""Tests for beat execution, repair and fallback output."""

from unittest.mock import AsyncMock

import pytest

from troupe.llm import GenerationError
from troupe.schemas import Beat, Budget, EventOrigin, EventType
from troupe.speaker import (
    MAX_AGENT_MEMORY,
    BeatExecutor,
    TurnAccumulator,
    extract_fallback_text,
)

from conftest import ScriptedGenerator, ndjson, speak


def make_beat(**overrides) -> Beat:
    values = dict(beat_id="b1-1", participant_id="ada", intent="greet", max_events=2)
    values.update(overrides)
    return Beat(**values)


async def run(generator, cast, context, beat=None, accumulator=None, **executor_kwargs):
    accumulator = accumulator or TurnAccumulator(context.budget, history_lines=context.history_lines)
    executor = BeatExecutor(generator, "participant-model", **executor_kwargs)
    events = await executor.run_beat(cast[0], beat or make_beat(), context, accumulator)
    return events, accumulator


def test_extract_fallback_text():
    assert extract_fallback_text("") == "I am here."
    assert extract_fallback_text("   \n \n") == "I am here."
    assert extract_fallback_text("\n\n  first line  \nsecond") == "first line"
    assert len(extract_fallback_text("y" * 1000)) == 360


@pytest.mark.asyncio
async def test_run_beat_accepts_well_formed_output(cast, make_context):
    generator = ScriptedGenerator(
        {"turn.speaker": [ndjson(speak("Hello all", author="Someone Else", beatId="b9-9"))]}
    )
    context = make_context()

    events, accumulator = await run(generator, cast, context)

    (event,) = events
    assert event.type is EventType.SPEAK
    assert event.author == "Ada"
    assert event.beat_id == "b1-1"
    assert event.event_id == "t1-1"
    assert event.origin is EventOrigin.PARTICIPANT
    assert accumulator.history_lines[-1] == "Ada: Hello all"
    assert generator.steps == ["turn.speaker"]
    assert generator.requests[0].temperature == 0.5
    assert generator.requests[0].model == "participant-model"


@pytest.mark.asyncio
async def test_run_beat_uses_routed_model(cast, make_context):
    generator = ScriptedGenerator({"turn.speaker": [ndjson(speak("Hi"))]})
    await run(generator, cast, make_context(), participant_models={"ada": "ada-model"})
    assert generator.requests[0].model == "ada-model"


@pytest.mark.asyncio
async def test_run_beat_filters_permissions_and_truncates(cast, make_context):
    raw = ndjson(
        {"type": "action", "content": "stands up"},
        {"type": "thought", "content": "keep it short"},
        speak("First"),
        speak("Second"),
        speak("Third"),
    )
    generator = ScriptedGenerator({"turn.speaker": [raw]})
    beat = make_beat(allow_action=False, allow_thought=True, max_events=2)

    events, _ = await run(generator, cast, make_context(), beat=beat)

    assert [(event.type, event.content) for event in events] == [
        (EventType.THOUGHT, "keep it short"),
        (EventType.SPEAK, "First"),
    ]


@pytest.mark.asyncio
async def test_disallowed_action_only_output_falls_back_to_one_speak(cast, make_context):
    action_only = ndjson({"type": "action", "content": "shrugs"})
    generator = ScriptedGenerator(
        {"turn.speaker": [action_only], "turn.speaker-repair": [action_only]}
    )
    context = make_context()

    events, _ = await run(generator, cast, context, beat=make_beat(allow_action=False))

    (event,) = events
    assert event.type is EventType.SPEAK
    assert event.author == "Ada"
    # Parsing succeeded, so the synthesized event keeps participant origin
    assert event.origin is EventOrigin.PARTICIPANT
    assert event.content == '{"type": "action", "content": "shrugs"}'
    assert generator.steps == ["turn.speaker", "turn.speaker-repair"]
    assert "speaker-fallback:ada:b1-1:no-speak-event" in context.turn_trace


@pytest.mark.asyncio
async def test_run_beat_repair_recovers(cast, make_context):
    generator = ScriptedGenerator(
        {
            "turn.speaker": ["Sure, here's what I'd say: hello!"],
            "turn.speaker-repair": [ndjson(speak("Hello!"))],
        }
    )

    events, _ = await run(generator, cast, make_context())

    (event,) = events
    assert event.content == "Hello!"
    assert event.origin is EventOrigin.REPAIR
    repair = generator.requests_for("turn.speaker-repair")[0]
    assert repair.temperature == 0.0
    assert "invalid-json-line" in repair.messages[1].content
    assert "author must be exactly: Ada" in repair.messages[0].content


@pytest.mark.asyncio
async def test_run_beat_total_malformation_uses_raw_text(cast, make_context):
    generator = ScriptedGenerator(
        {
            "turn.speaker": ["\n  Well, I suppose so.  \nMore text"],
            "turn.speaker-repair": ["still not json"],
        }
    )
    context = make_context()

    events, _ = await run(generator, cast, context)

    (event,) = events
    assert event.type is EventType.SPEAK
    assert event.origin is EventOrigin.REPAIR
    assert event.content == "still not json"
    assert event.event_id == "t1-1"


@pytest.mark.asyncio
async def test_run_beat_blank_output_says_i_am_here(cast, make_context):
    generator = ScriptedGenerator({"turn.speaker": [""], "turn.speaker-repair": ["   "]})
    events, _ = await run(generator, cast, make_context())
    assert events[0].content == "I am here."


@pytest.mark.asyncio
async def test_run_beat_skips_repair_past_deadline(cast, make_context, clock):
    context = make_context(budget=Budget(target_p95_turn_latency_ms=500))
    clock.advance_ms(450)
    generator = ScriptedGenerator({"turn.speaker": ["garbled"]})

    events, _ = await run(generator, cast, context)

    assert generator.steps == ["turn.speaker"]
    assert events[0].content == "garbled"
    assert events[0].origin is EventOrigin.REPAIR
    assert "speaker-retry-skipped:ada:b1-1:latency-budget" in context.turn_trace


@pytest.mark.asyncio
async def test_run_beat_propagates_generation_errors(cast, make_context):
    generator = ScriptedGenerator({"turn.speaker": [GenerationError("timeout")]})
    with pytest.raises(GenerationError):
        await run(generator, cast, make_context())


@pytest.mark.asyncio
async def test_accumulator_applies_turn_caps_across_beats(cast, make_context):
    context = make_context(budget=Budget(max_action_events_per_turn=1))
    accumulator = TurnAccumulator(context.budget)
    generator = ScriptedGenerator(
        {
            "turn.speaker": [
                ndjson({"type": "action", "content": "nods"}, speak("Yes")),
                ndjson({"type": "action", "content": "waves"}, speak("No")),
            ]
        }
    )
    executor = BeatExecutor(generator, "m")

    first = await executor.run_beat(cast[0], make_beat(allow_action=True), context, accumulator)
    second = await executor.run_beat(
        cast[1], make_beat(beat_id="b1-2", participant_id="bo", allow_action=True), context, accumulator
    )

    assert [event.type for event in first] == [EventType.ACTION, EventType.SPEAK]
    assert [event.type for event in second] == [EventType.SPEAK]
    assert [event.content for event in accumulator.events] == ["nods", "Yes", "No"]
    assert accumulator.history_lines == ["Ada (action): nods", "Ada: Yes", "Bo: No"]


@pytest.mark.asyncio
async def test_thoughts_go_to_private_memory_not_history(cast, make_context):
    context = make_context()
    accumulator = TurnAccumulator(
        context.budget, agent_memory={"ada": [f"note {i}" for i in range(MAX_AGENT_MEMORY)]}
    )
    generator = ScriptedGenerator(
        {"turn.speaker": [ndjson({"type": "thought", "content": "Bo seems nervous"}, speak("Hi"))]}
    )

    await BeatExecutor(generator, "m").run_beat(
        cast[0], make_beat(allow_thought=True), context, accumulator
    )

    assert accumulator.history_lines == ["Ada: Hi"]
    memory = accumulator.agent_memory["ada"]
    assert len(memory) == MAX_AGENT_MEMORY
    assert memory[-1] == "Bo seems nervous"
    assert memory[0] == "note 1"


@pytest.mark.asyncio
async def test_on_event_callback_sync_and_async(cast, make_context):
    context = make_context()
    seen = []
    async_callback = AsyncMock()

    def sync_callback(event):
        seen.append(event.event_id)

    generator = ScriptedGenerator({"turn.speaker": [ndjson(speak("a")), ndjson(speak("b"))]})
    executor = BeatExecutor(generator, "m")

    await executor.run_beat(cast[0], make_beat(), context, TurnAccumulator(context.budget, on_event=sync_callback))
    await executor.run_beat(cast[0], make_beat(), context, TurnAccumulator(context.budget, on_event=async_callback))

    assert seen == ["t1-1"]
    async_callback.assert_awaited_once()
    assert async_callback.await_args.args[0].content == "b"


@pytest.mark.asyncio
async def test_speaker_prompt_sees_earlier_beats_and_memory(cast, make_context):
    context = make_context(history_lines=["Sam: hi"])
    accumulator = TurnAccumulator(
        context.budget, history_lines=context.history_lines, agent_memory={"bo": ["Ada likes puzzles"]}
    )
    generator = ScriptedGenerator({"turn.speaker": [ndjson(speak("One")), ndjson(speak("Two"))]})
    executor = BeatExecutor(generator, "m")

    await executor.run_beat(cast[0], make_beat(), context, accumulator)
    await executor.run_beat(cast[1], make_beat(beat_id="b1-2", participant_id="bo"), context, accumulator)

    second = generator.requests[1]
    assert "Ada: One" in second.messages[1].content
    assert "Sam: hi" in second.messages[1].content
    assert "Ada likes puzzles" in second.messages[0].content
    assert "<name>Bo</name>" in second.messages[0].content
