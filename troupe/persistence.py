"""
State stores for room state and model routing.

The engine owns the ``RoomState`` schema; a store only owns durability. Each
turn calls ``load`` once at the start and ``save`` once at the very end, so a
turn that fails part-way leaves the stored state untouched.

Included implementations:
1. InMemoryStateStore - dict-based, data lost on exit (tests, prototyping)
2. JsonStateStore - one human-readable JSON file per conversation
3. PostgresStateStore - one JSONB row per conversation (asyncpg)

Usage pattern:
    store = JsonStateStore("troupe_state")
    await store.initialize()
    state = await store.load(conversation_id)
    ...
    await store.save(conversation_id, next_state)
    await store.close()
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from troupe.schemas import ModelAssignment, RoomState, SharedState, UserTier
from .config import Config

try:  # Optional dependency (only needed for PostgresStateStore)
    import asyncpg
except ImportError:  # pragma: no cover - asyncpg may not be installed for json/memory usage
    asyncpg = None


def create_initial_room_state(goal: str = "") -> RoomState:
    """Empty room state for a conversation that has never run a turn."""

    return RoomState(shared=SharedState(goal=goal))


class StateStore(ABC):
    """Abstract base class for per-conversation room state storage.

    ``load`` returns a fresh initial state for unknown conversations rather
    than None, so the orchestrator never has to special-case a first turn.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Set up connections, directories, tables, etc."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections and file handles."""
        pass

    @abstractmethod
    async def load(self, conversation_id: str) -> RoomState:
        """
        Load the room state for a conversation.

        Args:
            conversation_id: Conversation identifier

        Returns:
            Stored RoomState, or an initial empty state if none exists
        """
        pass

    @abstractmethod
    async def save(self, conversation_id: str, state: RoomState) -> None:
        """
        Replace the stored room state for a conversation.

        Args:
            conversation_id: Conversation identifier
            state: Complete room state to store
        """
        pass


class InMemoryStateStore(StateStore):
    """In-memory store (no database, no files).

    States are kept as serialized JSON so a caller mutating a returned
    object can never alter what is stored.
    """

    def __init__(self):
        self.states: Dict[str, str] = {}
        self.save_count = 0

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        # Data is kept after close so callers can inspect it
        pass

    async def load(self, conversation_id: str) -> RoomState:
        payload = self.states.get(conversation_id)
        if payload is None:
            return create_initial_room_state()
        return RoomState.model_validate_json(payload)

    async def save(self, conversation_id: str, state: RoomState) -> None:
        self.states[conversation_id] = state.model_dump_json()
        self.save_count += 1


_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


class JsonStateStore(StateStore):
    """File-based store: ``{base_path}/{conversation_id}.json``.

    All file I/O runs in a worker thread (asyncio.to_thread). Writes go to a
    temporary file first and are renamed into place.
    """

    def __init__(self, base_path: Path | str | None = None):
        self.base_path = Path(base_path) if base_path is not None else Config.STATE_DIR

    async def initialize(self) -> None:
        await asyncio.to_thread(self.base_path.mkdir, parents=True, exist_ok=True)

    async def close(self) -> None:
        # Nothing to clean up for JSON storage
        return None

    async def load(self, conversation_id: str) -> RoomState:
        path = self._path(conversation_id)
        if not path.exists():
            return create_initial_room_state()
        payload = await asyncio.to_thread(path.read_text, "utf-8")
        return RoomState.model_validate_json(payload)

    async def save(self, conversation_id: str, state: RoomState) -> None:
        path = self._path(conversation_id)
        payload = state.model_dump_json(indent=2)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(payload, "utf-8")
            tmp_path.replace(path)

        await asyncio.to_thread(_write)

    def _path(self, conversation_id: str) -> Path:
        safe = _UNSAFE_FILENAME.sub("_", conversation_id).strip("._") or "conversation"
        return self.base_path / f"{safe}.json"


class PostgresStateStore(StateStore):
    """PostgreSQL store: one JSONB row per conversation.

    Expected table:
        CREATE TABLE room_states (
            conversation_id TEXT PRIMARY KEY,
            state JSONB NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
    """

    def __init__(self, database_url: Optional[str] = None):
        if asyncpg is None:  # pragma: no cover - handled during runtime when dependency missing
            raise ImportError(
                "asyncpg is required for PostgresStateStore. Install with `pip install troupe[postgres]`."
            )

        self.database_url = database_url or Config.DATABASE_URL
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        if self.pool is None:
            self.pool = await asyncpg.create_pool(self.database_url)

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    async def load(self, conversation_id: str) -> RoomState:
        assert self.pool is not None, "State store not initialized"

        query = """
            SELECT state
            FROM room_states
            WHERE conversation_id = $1
        """

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(query, conversation_id)

        if not row:
            return create_initial_room_state()

        return RoomState.model_validate_json(row["state"])

    async def save(self, conversation_id: str, state: RoomState) -> None:
        assert self.pool is not None, "State store not initialized"

        query = """
            INSERT INTO room_states (conversation_id, state, updated_at)
            VALUES ($1, $2::jsonb, now())
            ON CONFLICT (conversation_id) DO UPDATE SET state = $2::jsonb, updated_at = now()
        """

        async with self.pool.acquire() as conn:
            await conn.execute(query, conversation_id, state.model_dump_json())


# ============================================================================
# Model assignment storage
# ============================================================================


@dataclass
class StoredAssignment:
    assignment: ModelAssignment
    tier: UserTier
    manual_override: bool = False


class ModelAssignmentStore(ABC):
    """Per (conversation, user) record of which model each participant uses."""

    @abstractmethod
    async def get(self, conversation_id: str, user_id: str) -> Optional[StoredAssignment]:
        pass

    @abstractmethod
    async def save(
        self,
        conversation_id: str,
        user_id: str,
        *,
        tier: UserTier,
        assignment: ModelAssignment,
        manual_override: bool = False,
    ) -> None:
        pass


class InMemoryAssignmentStore(ModelAssignmentStore):
    def __init__(self):
        self.assignments: Dict[tuple[str, str], StoredAssignment] = {}

    async def get(self, conversation_id: str, user_id: str) -> Optional[StoredAssignment]:
        return self.assignments.get((conversation_id, user_id))

    async def save(
        self,
        conversation_id: str,
        user_id: str,
        *,
        tier: UserTier,
        assignment: ModelAssignment,
        manual_override: bool = False,
    ) -> None:
        self.assignments[(conversation_id, user_id)] = StoredAssignment(
            assignment=assignment.model_copy(deep=True),
            tier=tier,
            manual_override=manual_override,
        )
