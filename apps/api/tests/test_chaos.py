"""
Chaos Tests: Failure Injection and Recovery
Tests how the generation pipeline handles upstream and infrastructure failures
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from unittest.mock import AsyncMock, patch

from roastme.core.config import settings
from roastme.core.errors import (
    ErrorCode,
    ImageGenerationError,
    InvalidTransitionError,
    RoastError,
    StorageError,
)
from roastme.services import orchestrator
from roastme.services.job_monitor import STUCK_MESSAGE, get_generation_metrics, job_monitor
from roastme.services.prompts import character_image_prompt


def no_delay(error, attempt):
    return 0


class TestRunWithRetry:
    """The per-step timeout and retry wrapper."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        fn = AsyncMock(side_effect=[Exception("boom"), Exception("boom"), "ok"])

        with patch("roastme.services.orchestrator.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await orchestrator.run_with_retry("c1", "image generation", fn, max_attempts=3)

        assert result == "ok"
        assert fn.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_rate_limit_backoff(self):
        fn = AsyncMock(side_effect=Exception("429 Too Many Requests"))

        with patch("roastme.services.orchestrator.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(RoastError) as exc_info:
                await orchestrator.run_with_retry("c1", "image generation", fn, max_attempts=4)

        assert [c.args[0] for c in sleep.await_args_list] == [5, 10, 20]
        assert exc_info.value.code == ErrorCode.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_exhaustion_message(self):
        fn = AsyncMock(side_effect=Exception("503 Service Unavailable"))

        with pytest.raises(RoastError) as exc_info:
            await orchestrator.run_with_retry(
                "c1", "image generation", fn, max_attempts=3, delay_fn=no_delay
            )

        assert exc_info.value.code == ErrorCode.UPSTREAM_UNAVAILABLE
        assert exc_info.value.message == (
            "image generation failed after 3 attempts: 503 Service Unavailable"
        )

    @pytest.mark.asyncio
    async def test_non_recoverable_stops_immediately(self):
        fn = AsyncMock(side_effect=Exception("API key not valid. Please pass a valid API key."))

        with pytest.raises(RoastError) as exc_info:
            await orchestrator.run_with_retry(
                "c1", "image generation", fn, max_attempts=5, delay_fn=no_delay
            )

        assert fn.await_count == 1
        assert exc_info.value.code == ErrorCode.NON_RECOVERABLE

    @pytest.mark.asyncio
    async def test_typed_non_recoverable_error_passes_through(self):
        error = ImageGenerationError(ErrorCode.NON_RECOVERABLE, "Image blocked by content_policy")
        fn = AsyncMock(side_effect=error)

        with pytest.raises(ImageGenerationError) as exc_info:
            await orchestrator.run_with_retry("c1", "image generation", fn, max_attempts=5)

        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_timeout_per_attempt(self):
        calls = 0

        async def hang():
            nonlocal calls
            calls += 1
            await asyncio.Event().wait()

        with pytest.raises(RoastError) as exc_info:
            await orchestrator.run_with_retry(
                "c1", "analyze_features", hang, max_attempts=2, timeout_sec=0.05, delay_fn=no_delay
            )

        assert calls == 2
        assert exc_info.value.code == ErrorCode.GENERATION_TIMEOUT
        assert "timed out" in exc_info.value.message

    def test_user_retry_delay_is_linear(self):
        assert [orchestrator.user_retry_delay(None, n) for n in (1, 2, 3)] == [2, 4, 6]


class TestPipelineFailures:
    """run_generation / retry_generation against a real database."""

    @pytest.mark.asyncio
    async def test_generation_completes(self, db_session, make_user, make_character):
        user = await make_user("pipeline-user-key-12345")
        character = await make_character("char-ok", user.id, status="generating")

        await orchestrator.run_generation("char-ok")

        await db_session.refresh(character)
        assert character.status == "completed"
        assert character.generation_params["status"] == "completed"
        assert character.model_url.endswith("characters/char-ok/original.png")
        assert character.thumbnail_url.endswith("characters/char-ok/thumbnail.jpg")
        assert character.seo_slug.startswith("pixar-roast-eyebrows-smile-")
        assert character.og_image_url.startswith(f"{settings.api_url}/v1/og?")
        assert character.og_title == "Captain Obvious | Roast Me Characters"
        assert character.ai_features_json["character_style"] == "pixar"
        assert character.generation_params["roast_content"]["title"] == "Captain Obvious"

    @pytest.mark.asyncio
    async def test_pending_character_is_started(self, db_session, make_user, make_character):
        user = await make_user("pipeline-user-key-12345")
        character = await make_character("char-pending", user.id, status="pending")

        await orchestrator.run_generation("char-pending")

        await db_session.refresh(character)
        assert character.status == "completed"

    @pytest.mark.asyncio
    async def test_completed_character_is_skipped(self, db_session, make_user, make_character):
        user = await make_user("pipeline-user-key-12345")
        await make_character("char-done", user.id, status="completed")

        with patch("roastme.services.orchestrator.generate_image", new_callable=AsyncMock) as gen:
            await orchestrator.run_generation("char-done")

        gen.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_image_failures_exhaust_attempts(self, db_session, make_user, make_character):
        user = await make_user("pipeline-user-key-12345")
        character = await make_character("char-fail", user.id, status="generating")

        with patch(
            "roastme.services.orchestrator.generate_image",
            new_callable=AsyncMock,
            side_effect=ImageGenerationError(ErrorCode.GENERATION_FAILED, "upstream exploded"),
        ) as gen, patch("roastme.services.orchestrator.asyncio.sleep", new_callable=AsyncMock):
            await orchestrator.run_generation("char-fail")

        assert gen.await_count == settings.generation_max_attempts
        await db_session.refresh(character)
        assert character.status == "failed"
        assert character.generation_params["error"] == (
            "image generation failed after 5 attempts: upstream exploded"
        )
        # analysis survives the failure so a retry can reuse it
        assert character.ai_features_json is not None
        assert character.model_url is None

    @pytest.mark.asyncio
    async def test_content_policy_fails_fast(self, db_session, make_user, make_character):
        user = await make_user("pipeline-user-key-12345")
        character = await make_character("char-policy", user.id, status="generating")

        with patch(
            "roastme.services.orchestrator.generate_image",
            new_callable=AsyncMock,
            side_effect=ImageGenerationError(
                ErrorCode.NON_RECOVERABLE, "Image blocked by content_policy (SAFETY)"
            ),
        ) as gen:
            await orchestrator.run_generation("char-policy")

        assert gen.await_count == 1
        await db_session.refresh(character)
        assert character.status == "failed"
        assert "content_policy" in character.generation_params["error"]

    @pytest.mark.asyncio
    async def test_analysis_outage_uses_fallback(self, db_session, make_user, make_character):
        user = await make_user("pipeline-user-key-12345")
        character = await make_character("char-fallback", user.id, status="generating")

        with patch(
            "roastme.services.orchestrator.analyze_features",
            new_callable=AsyncMock,
            side_effect=RoastError(ErrorCode.UPSTREAM_UNAVAILABLE, "vision 503"),
        ), patch("roastme.services.orchestrator.asyncio.sleep", new_callable=AsyncMock):
            await orchestrator.run_generation("char-fallback")

        await db_session.refresh(character)
        assert character.status == "completed"
        assert character.ai_features_json["character_style"] == "caricature"

    @pytest.mark.asyncio
    async def test_analysis_fallback_disabled(self, db_session, make_user, make_character):
        user = await make_user("pipeline-user-key-12345")
        character = await make_character("char-nofallback", user.id, status="generating")

        with patch.object(settings, "analysis_fallback_enabled", False), patch(
            "roastme.services.orchestrator.analyze_features",
            new_callable=AsyncMock,
            side_effect=RoastError(ErrorCode.UPSTREAM_UNAVAILABLE, "vision 503"),
        ), patch("roastme.services.orchestrator.asyncio.sleep", new_callable=AsyncMock):
            await orchestrator.run_generation("char-nofallback")

        await db_session.refresh(character)
        assert character.status == "failed"
        assert character.generation_params["error"].startswith("analyze_features failed after 2 attempts")

    @pytest.mark.asyncio
    async def test_missing_original_fails(self, db_session, make_user, make_character):
        user = await make_user("pipeline-user-key-12345")
        character = await make_character("char-lost", user.id, status="generating")

        with patch(
            "roastme.services.orchestrator.storage_service.download",
            new_callable=AsyncMock,
            side_effect=StorageError("Object not found", ErrorCode.STORAGE_FETCH_FAILED),
        ), patch("roastme.services.orchestrator.asyncio.sleep", new_callable=AsyncMock):
            await orchestrator.run_generation("char-lost")

        await db_session.refresh(character)
        assert character.status == "failed"
        assert character.generation_params["error"].startswith("fetch_original failed after 2 attempts")

    @pytest.mark.asyncio
    async def test_unexpected_error_still_fails_character(self, db_session, make_user, make_character):
        user = await make_user("pipeline-user-key-12345")
        character = await make_character("char-bug", user.id, status="generating")

        with patch(
            "roastme.services.orchestrator.generate_roast",
            new_callable=AsyncMock,
            side_effect=KeyError("roast"),
        ):
            await orchestrator.run_generation("char-bug")

        await db_session.refresh(character)
        assert character.status == "failed"
        assert "roast" in character.generation_params["error"]


class TestUserRetry:
    @pytest.mark.asyncio
    async def test_retry_uses_prompt_variant(
        self, db_session, make_user, make_character, analysis_json, roast_json
    ):
        user = await make_user("retry-user-key-1234567")
        character = await make_character(
            "char-retry", user.id, status="retrying", attempt=2, analysis=analysis_json, roast=roast_json
        )

        with patch(
            "roastme.services.orchestrator.character_image_prompt", wraps=character_image_prompt
        ) as prompt, patch(
            "roastme.services.orchestrator.analyze_features", new_callable=AsyncMock
        ) as analyze:
            await orchestrator.retry_generation("char-retry", 2)

        assert prompt.call_args.kwargs["retry_attempt"] == 2
        analyze.assert_not_awaited()

        await db_session.refresh(character)
        assert character.status == "completed"
        assert character.generation_params["attempt"] == 2
        assert "error" not in character.generation_params

    @pytest.mark.asyncio
    async def test_retry_without_analysis_reanalyses(self, db_session, make_user, make_character):
        user = await make_user("retry-user-key-1234567")
        character = await make_character("char-reanalyse", user.id, status="retrying", attempt=1)

        await orchestrator.retry_generation("char-reanalyse", 1)

        await db_session.refresh(character)
        assert character.status == "completed"
        assert character.ai_features_json["character_style"] == "pixar"
        assert character.seo_slug

    @pytest.mark.asyncio
    async def test_retry_failure_is_retry_failed(
        self, db_session, make_user, make_character, analysis_json
    ):
        user = await make_user("retry-user-key-1234567")
        character = await make_character(
            "char-retry-fail", user.id, status="retrying", attempt=1, analysis=analysis_json
        )

        with patch(
            "roastme.services.orchestrator.generate_image",
            new_callable=AsyncMock,
            side_effect=ImageGenerationError(ErrorCode.NO_IMAGE_RETURNED, "No image data found"),
        ) as gen, patch(
            "roastme.services.orchestrator.asyncio.sleep", new_callable=AsyncMock
        ) as sleep:
            await orchestrator.retry_generation("char-retry-fail", 1)

        assert gen.await_count == settings.retry_max_attempts
        assert [c.args[0] for c in sleep.await_args_list] == [2, 4]

        await db_session.refresh(character)
        assert character.status == "retry_failed"
        assert character.generation_params["attempt"] == 1
        assert character.generation_params["error"].startswith("image generation failed after 3 attempts")

    @pytest.mark.asyncio
    async def test_retry_skips_when_not_retrying(self, db_session, make_user, make_character):
        user = await make_user("retry-user-key-1234567")
        await make_character("char-not-retrying", user.id, status="failed")

        with patch("roastme.services.orchestrator.generate_image", new_callable=AsyncMock) as gen:
            await orchestrator.retry_generation("char-not-retrying", 1)

        gen.assert_not_awaited()


class TestConcurrentRetry:
    @pytest.mark.asyncio
    async def test_only_one_claim_wins(self, db_session, make_user, make_character, analysis_json):
        from roastme.core.database import AsyncSessionLocal

        user = await make_user("race-user-key-12345678")
        await make_character("char-race", user.id, status="failed", analysis=analysis_json)

        async with AsyncSessionLocal() as first, AsyncSessionLocal() as second:
            a = await orchestrator.load_character(first, "char-race")
            b = await orchestrator.load_character(second, "char-race")

            assert await orchestrator.claim_retry(first, a) == 1
            with pytest.raises(InvalidTransitionError):
                await orchestrator.claim_retry(second, b)

        assert a.status == "retrying"
        assert a.generation_params["attempt"] == 1
        assert a.generation_params["prompt_variant"] == 0

    @pytest.mark.asyncio
    async def test_claim_rejects_completed(self, db_session, make_user, make_character):
        user = await make_user("race-user-key-12345678")
        character = await make_character("char-complete", user.id, status="completed")

        with pytest.raises(InvalidTransitionError):
            await orchestrator.claim_retry(db_session, character)


class TestJobMonitor:
    """Stuck generation detection."""

    @pytest.mark.asyncio
    async def test_recovers_stuck_characters(self, db_session, make_user, make_character):
        user = await make_user("monitor-user-key-123456")
        old = datetime.utcnow() - timedelta(minutes=settings.stuck_generation_minutes + 5)
        generating = await make_character("stuck-gen", user.id, status="generating", updated_at=old)
        retrying = await make_character("stuck-retry", user.id, status="retrying", attempt=1, updated_at=old)
        pending = await make_character("stuck-pending", user.id, status="pending", updated_at=old)
        fresh = await make_character("fresh-gen", user.id, status="generating")
        done = await make_character("old-done", user.id, status="completed", updated_at=old)

        assert await job_monitor.check_and_recover_characters() == 3

        for character in (generating, retrying, pending, fresh, done):
            await db_session.refresh(character)
        assert generating.status == "failed"
        assert generating.generation_params["error"] == STUCK_MESSAGE
        assert retrying.status == "retry_failed"
        assert retrying.generation_params["attempt"] == 1
        assert pending.status == "failed"
        assert fresh.status == "generating"
        assert done.status == "completed"

    @pytest.mark.asyncio
    async def test_threshold_uses_given_time(self, db_session, make_user, make_character):
        user = await make_user("monitor-user-key-123456")
        await make_character("soon-stuck", user.id, status="generating")

        assert await job_monitor.check_and_recover_characters() == 0
        later = datetime.utcnow() + timedelta(minutes=settings.stuck_generation_minutes + 1)
        assert await job_monitor.check_and_recover_characters(now=later) == 1

    @pytest.mark.asyncio
    async def test_stuck_character_can_be_retried(self, db_session, make_user, make_character):
        user = await make_user("monitor-user-key-123456")
        old = datetime.utcnow() - timedelta(hours=1)
        character = await make_character("stuck-then-retry", user.id, status="generating", updated_at=old)

        await job_monitor.check_and_recover_characters()
        await db_session.refresh(character)

        assert await orchestrator.claim_retry(db_session, character) == 1

    @pytest.mark.asyncio
    async def test_metrics(self, db_session, make_user, make_character):
        user = await make_user("monitor-user-key-123456")
        await make_character("m-gen", user.id, status="generating")
        await make_character("m-done", user.id, status="completed")
        await make_character("m-fail", user.id, status="failed")

        metrics = await get_generation_metrics()
        assert metrics["generating"] == 1
        assert metrics["completed_last_hour"] == 1
        assert metrics["failed_last_hour"] == 1
        assert metrics["success_rate"] == 50

    @pytest.mark.asyncio
    async def test_monitor_wins_race_with_completion(self, db_session, make_user, make_character):
        user = await make_user("monitor-user-key-123456")
        character = await make_character("race-char", user.id, status="generating")
        real_generate_and_store = orchestrator.generate_and_store

        async def slow_generation(*args, **kwargs):
            images = await real_generate_and_store(*args, **kwargs)
            # generation overran; the monitor gives up on the row first
            later = datetime.utcnow() + timedelta(minutes=settings.stuck_generation_minutes + 1)
            assert await job_monitor.check_and_recover_characters(now=later) == 1
            return images

        with patch.object(orchestrator, "generate_and_store", side_effect=slow_generation), patch.object(
            orchestrator, "logger"
        ) as logger:
            await orchestrator.run_generation("race-char")

        await db_session.refresh(character)
        assert character.status == "failed"
        assert character.generation_params["error"] == STUCK_MESSAGE
        assert character.model_url is None

        discarded = [
            call
            for call in logger.warning.call_args_list
            if call.args[0] == "Generated image discarded, character no longer in progress"
        ]
        assert len(discarded) == 1
        assert discarded[0].kwargs["status"] == "failed"
        assert discarded[0].kwargs["model_url"].endswith("characters/race-char/original.png")
        logger.exception.assert_not_called()

    @pytest.mark.asyncio
    async def test_mark_completed_reports_discard(self, db_session, make_user, make_character):
        from roastme.models.dto import GeneratedImages

        user = await make_user("monitor-user-key-123456")
        await make_character("already-failed", user.id, status="failed")
        images = GeneratedImages(
            original="http://storage.test/roast-me/o.png",
            thumbnail="http://storage.test/roast-me/t.jpg",
            medium="http://storage.test/roast-me/m.jpg",
        )

        assert await orchestrator.mark_completed("already-failed", images, "og") is False
