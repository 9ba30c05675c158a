"""Per-participant model routing."""

from __future__ import annotations

from typing import Dict, Optional, Sequence

from .logging_utils import log_deterministic
from .persistence import ModelAssignmentStore
from .schemas import ModelAssignment, Participant, UserTier


async def resolve_participant_models(
    participants: Sequence[Participant],
    *,
    default_model: str,
    store: Optional[ModelAssignmentStore] = None,
    conversation_id: str,
    user_id: str,
    tier: UserTier = UserTier.BASE,
) -> Dict[str, str]:
    """Map every participant on the roster to a model id.

    Existing assignments from ``store`` win; blank or missing entries fall back
    to ``default_model``. The completed mapping is saved back with
    ``manual_override=False``.
    """

    models: Dict[str, str] = {}
    if store is not None:
        existing = await store.get(conversation_id, user_id)
        if existing is not None:
            for participant_id, model_id in existing.assignment.participant_models.items():
                if isinstance(model_id, str) and model_id.strip():
                    models[participant_id] = model_id.strip()

    filled = 0
    for participant in participants:
        if not models.get(participant.id):
            models[participant.id] = default_model
            filled += 1

    if store is not None:
        await store.save(
            conversation_id,
            user_id,
            tier=tier,
            assignment=ModelAssignment(participant_models=dict(models)),
            manual_override=False,
        )

    if filled:
        log_deterministic(f"Routed {filled} participant(s) to default model {default_model}")
    return models
