"""
Generation status state machine

pending -> generating -> completed | failed
failed | retry_failed -> retrying -> completed | retry_failed

Every write to a character's generation status goes through transition(),
which returns the new generation_params blob. The Character.status column
mirrors generation_params["status"].
"""

from datetime import datetime
from typing import Optional

from roastme.core.errors import InvalidTransitionError
from roastme.models.dto import GenerationStatus

ALLOWED_TRANSITIONS = {
    GenerationStatus.pending: {GenerationStatus.generating},
    GenerationStatus.generating: {GenerationStatus.completed, GenerationStatus.failed},
    GenerationStatus.failed: {GenerationStatus.retrying},
    GenerationStatus.retrying: {GenerationStatus.completed, GenerationStatus.retry_failed},
    GenerationStatus.retry_failed: {GenerationStatus.retrying},
    GenerationStatus.completed: set(),
}

TERMINAL_STATES = {
    GenerationStatus.completed,
    GenerationStatus.failed,
    GenerationStatus.retry_failed,
}

RETRYABLE_STATES = {GenerationStatus.failed, GenerationStatus.retry_failed}

IN_PROGRESS_STATES = {GenerationStatus.generating, GenerationStatus.retrying}

FAILURE_STATES = {GenerationStatus.failed, GenerationStatus.retry_failed}


def current_status(params: Optional[dict]) -> GenerationStatus:
    raw = (params or {}).get("status") or GenerationStatus.pending.value
    return GenerationStatus(raw)


def current_attempt(params: Optional[dict]) -> int:
    return int((params or {}).get("attempt") or 0)


def next_attempt(params: Optional[dict]) -> int:
    return current_attempt(params) + 1


def can_transition(current: GenerationStatus, target: GenerationStatus) -> bool:
    return GenerationStatus(target) in ALLOWED_TRANSITIONS[GenerationStatus(current)]


def transition(
    params: Optional[dict],
    target: GenerationStatus,
    *,
    attempt: Optional[int] = None,
    error: Optional[str] = None,
    **extra,
) -> dict:
    """
    Move generation_params to a new status.

    Args:
        params: current generation_params (not mutated)
        target: status to move to
        attempt: new attempt number, must not go backwards
        error: failure message, only kept on failure states
        **extra: other keys to merge (style, roast_content, prompt_variant)

    Raises:
        InvalidTransitionError: edge not in the graph or attempt decreased
    """
    target = GenerationStatus(target)
    current = current_status(params)

    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)

    previous_attempt = current_attempt(params)
    if attempt is None:
        attempt = previous_attempt
    elif attempt < previous_attempt:
        raise InvalidTransitionError(
            current.value,
            target.value,
            reason=f"attempt {attempt} is lower than {previous_attempt}",
        )

    updated = dict(params or {})
    updated.update(extra)
    updated["status"] = target.value
    updated["attempt"] = attempt
    updated["updated_at"] = datetime.utcnow().isoformat()
    if target in FAILURE_STATES:
        updated["error"] = error or updated.get("error") or "Unknown error"
    else:
        updated.pop("error", None)
    return updated


def apply_transition(character, target: GenerationStatus, **kwargs) -> dict:
    """Transition a Character row in place, keeping the status column in sync."""
    params = transition(character.generation_params, target, **kwargs)
    character.generation_params = params
    character.status = params["status"]
    return params
