"""Prompt templates and message builders for each generation step.

Templates use ``{{double_brace}}`` placeholders so JSON examples inside them
need no escaping. Builders compute the placeholder values, render the
template and return the role-tagged messages the generator expects.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from .events import event_to_history_line, normalize_text
from .llm import ChatMessage
from .schemas import Beat, Budget, Participant, TheatricalEvent


@dataclass
class PromptTemplate:
    """Represents a templated prompt with placeholders."""

    name: str
    system: str
    user: str
    description: str = ""


class PromptLibrary:
    """Container for named prompt templates per generation step."""

    def __init__(self) -> None:
        self.templates: Dict[str, PromptTemplate] = {}

    def register(self, template: PromptTemplate) -> None:
        self.templates[template.name] = template

    def get(self, name: str) -> PromptTemplate:
        return self.templates[name]


_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def render_template(text: str, values: Dict[str, str]) -> str:
    # Single pass, so substituted values are never expanded again
    return _PLACEHOLDER.sub(lambda match: values.get(match[1], match[0]), text)


def _drop_blank_lines(text: str) -> str:
    return "\n".join(line for line in text.split("\n") if line.strip())


def escape_xml(value: str) -> str:
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def xml_tag(tag: str, value: str) -> str:
    return f"<{tag}>{escape_xml(value)}</{tag}>"


# Default templates -----------------------------------------------------------

DEFAULT_PROMPTS = PromptLibrary()

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="director",
        system=(
            "You are a scene Director for a multi-agent room.\n"
            "Return ONLY minified JSON object with key beats.\n"
            "Schema:\n"
            '{"beats":[{"agent_id":"...","intent":"...","allow_action":true|false,'
            '"allow_thought":true|false,"tone_hint":"...","max_events":1-3}]}\n'
            "Rules:\n"
            "- Beat-only guidance. Do NOT script final lines.\n"
            "- Keep events sparse and meaningful.\n"
            "- Never include narrator/non-participant agent ids.\n"
            "- Max beats must be <= maxAgents.\n"
            "- If unsure, keep allow_action/allow_thought false."
        ),
        user=(
            "PRESET_ID: {{preset_id}}\n"
            "PRESET_RULES:\n{{preset_prompt}}\n"
            "GOAL: {{goal}}\n"
            "SUMMARY_WINDOW: {{summary_window}}\n"
            "MAX_AGENTS: {{max_agents}}\n"
            "BUDGET: {{budget_json}}\n"
            "PARTICIPANTS:\n{{participant_lines}}\n"
            "{{recent_context}}\n"
            "{{user_name}}: {{user_message}}"
        ),
        description="Plans one beat per participant for the incoming message.",
    )
)

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="director_repair",
        system=(
            "Repair the JSON output to match the required schema exactly.\n"
            "Output only one minified JSON object.\n"
            "Preserve intent but enforce constraints.\n"
            "Allowed agent_id values: {{allowed_ids}}\n"
            "Max beats: {{max_agents}}"
        ),
        user=(
            "Failure reason: {{reason}}\n\n"
            "Broken payload:\n\n{{raw}}\n\n"
            "Return repaired JSON now."
        ),
        description="Asks the director model to fix an unusable plan.",
    )
)

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="speaker",
        system=(
            "You are the participant defined below.\n"
            "Output only NDJSON events; each line is one JSON object.\n"
            "Allowed types: speak, action, thought.\n"
            "Schema per line:\n"
            '{"type":"speak|action|thought","author":"Participant Name","content":"...",'
            '"visibility":"public|private","intensity":1-5}\n'
            "Rules:\n"
            "- Author must match your participant name.\n"
            "- No narrator events.\n"
            "- Keep output sparse and meaningful.\n"
            "- Include at least one speak event.\n"
            "{{action_rule}}\n"
            "{{thought_rule}}\n"
            "<preset>{{preset_prompt}}</preset>\n"
            "<participant>{{participant_xml}}</participant>\n"
            "<beat>{{beat_xml}}</beat>\n"
            "<context>{{context_xml}}</context>\n"
            "{{memory_xml}}"
        ),
        user="{{last_messages}}\n\n{{user_name}}: {{user_message}}",
        description="Drives one participant through one beat.",
    )
)

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="speaker_repair",
        system=(
            "Repair malformed NDJSON event output.\n"
            "Return ONLY NDJSON lines.\n"
            "author must be exactly: {{participant_name}}\n"
            "beatId should be: {{beat_id}}\n"
            "{{action_rule}}\n"
            "{{thought_rule}}\n"
            "Include at least one speak event."
        ),
        user=(
            "Failure reason: {{reason}}\n\n"
            "Broken output:\n\n{{raw}}\n\n"
            "Return valid NDJSON now."
        ),
        description="Asks a participant's model to fix unusable event output.",
    )
)

DEFAULT_PROMPTS.register(
    PromptTemplate(
        name="summarizer",
        system=(
            "You are a summarizer that compacts room state.\n"
            "Use only provided facts.\n"
            "Keep it concise and actionable.\n"
            "Include: key decisions, commitments, unresolved questions, user intent shifts.\n"
            "Do not output JSON."
        ),
        user=(
            "GOAL: {{goal}}\n"
            "SUMMARY_WINDOW: {{summary_window}}\n"
            "{{last_messages}}\n"
            "NEW_USER_MESSAGE: {{user_name}}: {{user_message}}\n"
            "{{meaningful_events}}"
        ),
        description="Folds recent history into the rolling summary window.",
    )
)


# Builders ----------------------------------------------------------------------


def _messages(system: str, user: str) -> List[ChatMessage]:
    return [ChatMessage(role="system", content=system), ChatMessage(role="user", content=user)]


def build_director_messages(
    *,
    user_name: str,
    user_message: str,
    goal: Optional[str],
    summary_window: str,
    history_lines: Sequence[str],
    participants: Sequence[Participant],
    preset_id: str,
    preset_prompt: str,
    budget: Budget,
    max_agents: int,
    library: PromptLibrary = DEFAULT_PROMPTS,
) -> List[ChatMessage]:
    template = library.get("director")
    values = {
        "preset_id": preset_id,
        "preset_prompt": preset_prompt,
        "goal": goal or "(none)",
        "summary_window": summary_window or "(none)",
        "max_agents": str(max_agents),
        "budget_json": json.dumps(budget.model_dump(by_alias=True), separators=(",", ":")),
        "participant_lines": "\n".join(
            f"{participant.id}: {participant.name} - {participant.bio or ''}"
            for participant in participants
        ),
        "recent_context": "RECENT_CONTEXT:\n" + "\n".join(history_lines) if history_lines else "",
        "user_name": user_name,
        "user_message": user_message,
    }
    return _messages(
        render_template(template.system, values),
        _drop_blank_lines(render_template(template.user, values)),
    )


def build_director_repair_messages(
    *,
    raw: str,
    reason: str,
    participants: Sequence[Participant],
    max_agents: int,
    library: PromptLibrary = DEFAULT_PROMPTS,
) -> List[ChatMessage]:
    template = library.get("director_repair")
    values = {
        "allowed_ids": ", ".join(participant.id for participant in participants),
        "max_agents": str(max_agents),
        "reason": reason,
        "raw": raw,
    }
    return _messages(render_template(template.system, values), render_template(template.user, values))


def _permission_rules(allow_action: bool, allow_thought: bool, *, repair: bool) -> Dict[str, str]:
    if repair:
        return {
            "action_rule": "action is allowed" if allow_action else "action is not allowed",
            "thought_rule": "thought is allowed" if allow_thought else "thought is not allowed",
        }
    return {
        "action_rule": "- Action allowed." if allow_action else "- Action not allowed.",
        "thought_rule": (
            "- Thought allowed only if meaningful voiceover."
            if allow_thought
            else "- Thought not allowed."
        ),
    }


def build_speaker_messages(
    *,
    participant: Participant,
    beat: Beat,
    user_name: str,
    user_message: str,
    goal: Optional[str],
    summary_window: str,
    history_lines: Sequence[str],
    preset_prompt: str,
    agent_memory: Sequence[str] = (),
    library: PromptLibrary = DEFAULT_PROMPTS,
) -> List[ChatMessage]:
    template = library.get("speaker")
    values = {
        **_permission_rules(beat.allow_action, beat.allow_thought, repair=False),
        "preset_prompt": preset_prompt,
        "participant_xml": (
            xml_tag("id", participant.id)
            + xml_tag("name", participant.name)
            + xml_tag("bio", participant.bio or "")
        ),
        "beat_xml": (
            xml_tag("beat_id", beat.beat_id)
            + xml_tag("intent", beat.intent)
            + xml_tag("tone_hint", beat.tone_hint or "")
            + xml_tag("max_events", str(beat.max_events))
        ),
        "context_xml": xml_tag("goal", goal or "") + xml_tag("summary_window", summary_window or ""),
        "memory_xml": (
            f"<memory>{xml_tag('private_notes', ' | '.join(agent_memory))}</memory>"
            if agent_memory
            else ""
        ),
        "last_messages": "LAST_MESSAGES:\n" + "\n".join(history_lines) if history_lines else "",
        "user_name": user_name,
        "user_message": user_message,
    }
    return _messages(
        render_template(template.system, values).rstrip(),
        render_template(template.user, values).strip(),
    )


def build_speaker_repair_messages(
    *,
    raw: str,
    reason: str,
    participant_name: str,
    beat: Beat,
    library: PromptLibrary = DEFAULT_PROMPTS,
) -> List[ChatMessage]:
    template = library.get("speaker_repair")
    values = {
        **_permission_rules(beat.allow_action, beat.allow_thought, repair=True),
        "participant_name": participant_name,
        "beat_id": beat.beat_id,
        "reason": reason,
        "raw": raw,
    }
    return _messages(render_template(template.system, values), render_template(template.user, values))


def build_summarizer_messages(
    *,
    user_name: str,
    user_message: str,
    goal: Optional[str],
    summary_window: str,
    history_lines: Sequence[str],
    meaningful_events: Iterable[TheatricalEvent],
    library: PromptLibrary = DEFAULT_PROMPTS,
) -> List[ChatMessage]:
    template = library.get("summarizer")
    event_lines = [event_to_history_line(event) for event in meaningful_events]
    values = {
        "goal": goal or "(none)",
        "summary_window": summary_window or "(none)",
        "last_messages": "LAST_MESSAGES:\n" + "\n".join(history_lines) if history_lines else "",
        "user_name": user_name,
        "user_message": user_message,
        "meaningful_events": "MEANINGFUL_EVENTS:\n" + "\n".join(event_lines) if event_lines else "",
    }
    user = normalize_text(_drop_blank_lines(render_template(template.user, values)))
    return _messages(template.system, user)
