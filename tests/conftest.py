"""Shared fixtures: a scripted text generator and a small cast."""

from __future__ import annotations

import json
from typing import Dict, Iterable, List, Union

import pytest

from troupe.context import TurnContext
from troupe.latency import LatencyGuard
from troupe.llm import GenerationRequest
from troupe.schemas import Budget, Participant

ScriptItem = Union[str, Exception]


class ScriptedGenerator:
    """Replays canned responses keyed by generation step name.

    Steps are the ``GenerationTrace`` names (``turn.director``,
    ``turn.director-repair``, ``turn.speaker``, ``turn.speaker-repair``,
    ``turn.summarizer``). Each call pops the next item for its step; an
    Exception item is raised instead of returned.
    """

    def __init__(self, script: Dict[str, Iterable[ScriptItem]] | None = None) -> None:
        self.script: Dict[str, List[ScriptItem]] = {
            step: list(items) for step, items in (script or {}).items()
        }
        self.requests: List[GenerationRequest] = []

    async def __call__(self, request: GenerationRequest) -> str:
        self.requests.append(request)
        queue = self.script.get(request.step)
        if not queue:
            raise AssertionError(f"No scripted response left for step {request.step!r}")
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    @property
    def steps(self) -> List[str]:
        return [request.step for request in self.requests]

    def requests_for(self, step: str) -> List[GenerationRequest]:
        return [request for request in self.requests if request.step == step]


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


def ndjson(*records: dict) -> str:
    return "\n".join(json.dumps(record) for record in records)


def speak(content: str, **extra) -> dict:
    return {"type": "speak", "content": content, **extra}


def director_json(*beats: dict) -> str:
    return json.dumps({"beats": list(beats)})


@pytest.fixture
def cast() -> List[Participant]:
    return [
        Participant(id="ada", name="Ada", bio="Mathematician with a dry wit"),
        Participant(id="bo", name="Bo", bio="Retired sailor, tells long stories"),
        Participant(id="cy", name="Cy", bio="Botanist, quietly precise"),
    ]


@pytest.fixture
def budget() -> Budget:
    return Budget()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_context(cast, budget, clock):
    def _make(**overrides) -> TurnContext:
        values = dict(
            conversation_id="room-1",
            turn_index=0,
            user_name="Sam",
            user_message="What should we read next?",
            participants=cast,
            budget=budget,
            guard=None,
        )
        values.update(overrides)
        if values["guard"] is None:
            values["guard"] = LatencyGuard.for_budget(values["budget"], clock=clock)
        return TurnContext(**values)

    return _make
