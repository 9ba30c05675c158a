"""
Stage loading for JSON-defined rooms.

A stage file declares everything a host needs to start a conversation: the
participant roster, the preset the director plays to, an optional goal and
budget overrides.

Stage file structure:
```json
{
  "name": "Salon",
  "description": "...",
  "preset": {"id": "salon", "prompt": "Keep it witty and brief."},
  "goal": "Pick a book for next month",
  "max_participants": 3,
  "budget": {"maxActionEventsPerTurn": 1},
  "participants": [
    {"id": "ada", "name": "Ada", "bio": "...", "traits": "..."}
  ]
}
```

Usage:
    loader = StageLoader()
    stage = loader.load("salon")
    budget = stage.budget(Config.default_budget())
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from .config import Config
from .schemas import Budget, Participant


class Stage(BaseModel):
    """A validated stage definition."""

    name: str
    description: str = ""
    preset_id: str = "default"
    preset_prompt: str = ""
    goal: str = ""
    max_participants: int = Field(0, ge=0)
    budget_overrides: Dict[str, Any] = Field(default_factory=dict)
    participants: List[Participant]

    def budget(self, base: Budget) -> Budget:
        """``base`` with this stage's overrides applied (camelCase or snake_case keys)."""
        if not self.budget_overrides:
            return base
        names = {info.alias: name for name, info in Budget.model_fields.items() if info.alias}
        overrides = {names.get(key, key): value for key, value in self.budget_overrides.items()}
        return Budget(**{**base.model_dump(), **overrides})


class StageLoader:
    """Load and validate stages from JSON files.

    Directory structure:
    - Default: {PROJECT_ROOT}/examples/stages/
    - Override via constructor: StageLoader(Path("/custom/stages"))
    - Stage files: {stage_name}.json

    Validation raises ValueError with the offending field named, before any
    turn runs.
    """

    def __init__(self, stages_dir: Optional[Path] = None):
        self.stages_dir = stages_dir or Config.STAGES_DIR

    def load(self, stage_name: str) -> Stage:
        """Load ``{stage_name}.json`` from the stages directory.

        Raises:
            FileNotFoundError: If the stage file doesn't exist
            ValueError: If the stage is missing fields or malformed
        """
        stage_path = self.stages_dir / f"{stage_name}.json"

        if not stage_path.exists():
            raise FileNotFoundError(f"Stage '{stage_name}' not found at {stage_path}")

        return self.load_path(stage_path)

    def load_path(self, stage_path: Path) -> Stage:
        data = json.loads(Path(stage_path).read_text("utf-8"))
        return self.parse(data)

    def parse(self, data: Dict[str, Any]) -> Stage:
        self._validate_stage(data)

        preset = data.get("preset") or {}
        try:
            return Stage(
                name=data["name"],
                description=data.get("description", ""),
                preset_id=preset.get("id", "default"),
                preset_prompt=preset.get("prompt", ""),
                goal=data.get("goal", ""),
                max_participants=data.get("max_participants", 0),
                budget_overrides=data.get("budget") or {},
                participants=[Participant(**entry) for entry in data["participants"]],
            )
        except ValidationError as exc:
            raise ValueError(f"Stage '{data['name']}' is invalid: {exc}") from exc

    def _validate_stage(self, data: Dict[str, Any]) -> None:
        required = ["name", "participants"]
        missing = [field for field in required if field not in data]

        if missing:
            raise ValueError(f"Stage missing required fields: {missing}")

        if not data["participants"]:
            raise ValueError("Stage must have at least one participant")

        ids = [entry.get("id") for entry in data["participants"]]
        duplicates = sorted({pid for pid in ids if pid and ids.count(pid) > 1})
        if duplicates:
            raise ValueError(f"Stage has duplicate participant ids: {duplicates}")

        budget = data.get("budget") or {}
        if not isinstance(budget, dict):
            raise ValueError("Stage 'budget' must be an object")
        try:
            Budget.model_validate(budget)
        except ValidationError as exc:
            raise ValueError(f"Stage budget overrides are invalid: {exc}") from exc


def load_stage(stage_name: str) -> Stage:
    """Convenience function to load a stage from the default stages directory."""
    loader = StageLoader()
    return loader.load(stage_name)
