"""Literary salon: chat with a directed cast loaded from a stage file.

Each line you type runs one turn. The director plans a beat per participant,
participants answer with speak/action/thought events, and the room state is
saved as JSON between turns (so you can stop and resume a conversation).

    uv run python examples/salon/run.py

Send fixed messages instead of reading stdin:

    uv run python examples/salon/run.py -m "What should we read next?" -m "Something shorter?"

Environment variables expected:
- `LLM_PROVIDER` (e.g., `openai`, or `ollama` for local models)
- `DIRECTOR_MODEL` / `PARTICIPANT_MODEL` (e.g., `gpt-5-nano`)
- Provider-specific API key (e.g., `OPENAI_API_KEY`)
- Optional `SUMMARIZER_MODEL` to enable compaction
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import List

from troupe import (
    JsonStateStore,
    MirascopeGenerator,
    Orchestrator,
    ReasoningEffort,
    StageLoader,
    TheatricalEvent,
    TurnRequest,
)
from troupe.config import Config
from troupe.logging_utils import Color, colored


def print_event(event: TheatricalEvent) -> None:
    if event.type.value == "speak":
        print(f"{colored(event.author, Color.CYAN, bold=True)}: {event.content}")
    elif event.type.value == "action":
        print(colored(f"  * {event.author} {event.content}", Color.BLUE))
    else:
        print(colored(f"  ({event.author} thinks: {event.content})", Color.BLUE))


def print_beat_start(payload: dict) -> None:
    print(colored(f"  -> {payload['name']}: {payload['intent']}", Color.YELLOW))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Troupe salon example")
    parser.add_argument("--stage", default="salon", help="Stage name under examples/stages/")
    parser.add_argument("--conversation", default="salon-demo", help="Conversation id")
    parser.add_argument("--user", default="You", help="Display name for your messages")
    parser.add_argument("-m", "--message", action="append", default=None, help="Message to send (repeatable)")
    parser.add_argument("--state-dir", type=Path, default=None, help="Directory for JSON room state")
    parser.add_argument("--show-beats", action="store_true", help="Print each beat as it starts")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> None:
    Config.validate()
    print(Config.display())

    stage = StageLoader().load(args.stage)
    budget = stage.budget(Config.default_budget())
    store = JsonStateStore(args.state_dir)
    await store.initialize()

    orchestrator = Orchestrator(
        MirascopeGenerator(Config.LLM_PROVIDER, ollama_base_url=Config.OLLAMA_BASE_URL),
        state_store=store,
    )

    def build_request(message: str) -> TurnRequest:
        return TurnRequest(
            conversation_id=args.conversation,
            message=message,
            participants=stage.participants,
            director_model=Config.DIRECTOR_MODEL,
            default_participant_model=Config.PARTICIPANT_MODEL,
            caller_name=args.user,
            summarizer_model=Config.SUMMARIZER_MODEL or None,
            director_reasoning=ReasoningEffort(Config.DIRECTOR_REASONING),
            participant_reasoning=ReasoningEffort(Config.PARTICIPANT_REASONING),
            summarizer_reasoning=ReasoningEffort(Config.SUMMARIZER_REASONING),
            budget=budget,
            preset_id=stage.preset_id,
            preset_prompt=stage.preset_prompt,
            goal=stage.goal or None,
            max_participants=stage.max_participants or Config.MAX_PARTICIPANTS,
            compact_every_chars=Config.COMPACT_EVERY_CHARS,
            compact_keep_messages=Config.COMPACT_KEEP_MESSAGES,
            on_beat_start=print_beat_start if args.show_beats else None,
            on_event=print_event,
        )

    print(f"\n{stage.name}: {stage.description}")
    print(f"Cast: {', '.join(p.name for p in stage.participants)}\n")

    try:
        if args.message:
            messages: List[str] = args.message
            for message in messages:
                print(f"{args.user}: {message}")
                await orchestrator.run_turn(build_request(message))
            return

        while True:
            try:
                message = input(f"{args.user}: ")
            except EOFError:
                break
            if message.strip().lower() in {"quit", "exit"}:
                break
            if not message.strip():
                continue
            await orchestrator.run_turn(build_request(message))
    finally:
        await store.close()


def main() -> None:
    asyncio.run(run(parse_args()))


if __name__ == "__main__":
    main()
