"""Tracing hooks.

The engine never depends on a tracing vendor. Hosts plug one in by providing a
``Tracer``; the default ``NullTracer`` records nothing.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, AsyncIterator, Dict, List, Optional, Protocol


@dataclass
class TraceContext:
    """Caller-supplied correlation data for a turn."""

    conversation_id: str
    user_id: Optional[str] = None


@dataclass
class TurnTraceMeta:
    user_message: str
    turn_index: int
    participant_ids: List[str] = field(default_factory=list)


class SpanHandle(Protocol):
    def update(
        self,
        *,
        output: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    def end(self) -> None: ...


class Tracer(Protocol):
    def start_span(
        self,
        name: str,
        *,
        input: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SpanHandle]: ...

    def turn(
        self, context: Optional[TraceContext], meta: TurnTraceMeta
    ) -> AsyncContextManager[None]: ...


class NullTracer:
    """Tracer that opens no spans."""

    def start_span(
        self,
        name: str,
        *,
        input: Any = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SpanHandle]:
        return None

    @asynccontextmanager
    async def turn(self, context: Optional[TraceContext], meta: TurnTraceMeta) -> AsyncIterator[None]:
        yield
