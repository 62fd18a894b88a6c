"""
Generation status state machine tests
"""

import pytest

from roastme.core.errors import InvalidTransitionError
from roastme.models.dto import GenerationStatus as S
from roastme.services.status import (
    ALLOWED_TRANSITIONS,
    apply_transition,
    can_transition,
    current_attempt,
    current_status,
    next_attempt,
    transition,
)


class TestTransitionGraph:
    """Only the documented edges are allowed."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (S.pending, S.generating),
            (S.generating, S.completed),
            (S.generating, S.failed),
            (S.failed, S.retrying),
            (S.retrying, S.completed),
            (S.retrying, S.retry_failed),
            (S.retry_failed, S.retrying),
        ],
    )
    def test_allowed_edges(self, current, target):
        assert can_transition(current, target) is True

    @pytest.mark.parametrize(
        "current,target",
        [
            (S.pending, S.completed),
            (S.pending, S.failed),
            (S.generating, S.retrying),
            (S.generating, S.retry_failed),
            (S.failed, S.completed),
            (S.completed, S.retrying),
            (S.completed, S.failed),
            (S.retrying, S.failed),
        ],
    )
    def test_disallowed_edges(self, current, target):
        assert can_transition(current, target) is False
        with pytest.raises(InvalidTransitionError):
            transition({"status": current.value}, target)

    def test_completed_is_terminal(self):
        assert ALLOWED_TRANSITIONS[S.completed] == set()


class TestTransition:
    def test_missing_params_start_pending(self):
        assert current_status(None) == S.pending
        assert current_status({}) == S.pending
        assert current_attempt(None) == 0

    def test_does_not_mutate_input(self):
        params = {"status": "pending", "attempt": 0}
        updated = transition(params, S.generating)
        assert params == {"status": "pending", "attempt": 0}
        assert updated["status"] == "generating"
        assert "updated_at" in updated

    def test_failure_keeps_error(self):
        params = transition({"status": "generating"}, S.failed, error="quota exceeded")
        assert params["status"] == "failed"
        assert params["error"] == "quota exceeded"

    def test_failure_without_message_gets_default(self):
        params = transition({"status": "generating"}, S.failed)
        assert params["error"] == "Unknown error"

    def test_success_clears_error(self):
        params = {"status": "retrying", "attempt": 1, "error": "old failure"}
        updated = transition(params, S.completed)
        assert "error" not in updated
        assert updated["attempt"] == 1

    def test_extra_keys_merged(self):
        params = transition(
            {"status": "failed", "attempt": 0, "style": "pixar"},
            S.retrying,
            attempt=1,
            prompt_variant=0,
        )
        assert params["style"] == "pixar"
        assert params["prompt_variant"] == 0


class TestAttemptMonotonicity:
    """Attempt numbers never go backwards across retries."""

    def test_next_attempt_increments(self):
        assert next_attempt({"attempt": 2}) == 3
        assert next_attempt({}) == 1

    def test_decreasing_attempt_rejected(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition({"status": "failed", "attempt": 3}, S.retrying, attempt=2)
        assert "attempt 2 is lower than 3" in exc_info.value.message

    def test_attempt_kept_when_not_given(self):
        params = transition({"status": "retrying", "attempt": 2}, S.retry_failed, error="x")
        assert params["attempt"] == 2

    def test_full_lifecycle(self):
        params = {"status": "pending", "attempt": 0}
        params = transition(params, S.generating)
        params = transition(params, S.failed, error="boom")
        attempts = []
        for _ in range(3):
            params = transition(params, S.retrying, attempt=next_attempt(params))
            attempts.append(params["attempt"])
            params = transition(params, S.retry_failed, error="again")
        params = transition(params, S.retrying, attempt=next_attempt(params))
        params = transition(params, S.completed)

        assert attempts == [1, 2, 3]
        assert params["status"] == "completed"
        assert params["attempt"] == 4
        assert "error" not in params


class TestApplyTransition:
    def test_status_column_synced(self):
        class Row:
            generation_params = {"status": "pending", "attempt": 0}
            status = "pending"

        row = Row()
        apply_transition(row, S.generating)
        assert row.status == "generating"
        assert row.generation_params["status"] == "generating"
