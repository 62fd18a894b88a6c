"""
Job Monitor Service: Stuck generation detection

Background service that runs periodically to:
1. Fail characters stuck in 'generating' (worker died mid-pipeline)
2. Fail characters stuck in 'retrying' as retry_failed
3. Push characters that never left 'pending' through to failed

Every move goes through the status state machine, so a failed character
can be retried by its owner afterwards.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional
import structlog

from roastme.core.config import settings
from roastme.core.database import AsyncSessionLocal
from roastme.models.db import Character
from roastme.models.dto import GenerationStatus
from roastme.services.status import apply_transition
from sqlalchemy import select, and_, func

logger = structlog.get_logger()

STUCK_MESSAGE = "Generation timed out"


class JobMonitor:
    """Background service for generation health monitoring"""

    def __init__(self):
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the monitor background task"""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info(
            "Job monitor started", interval_seconds=settings.job_monitor_interval_seconds
        )

    async def stop(self):
        """Stop the monitor background task"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Job monitor stopped")

    async def _monitor_loop(self):
        while self._running:
            try:
                await self.check_and_recover_characters()
            except Exception as e:
                logger.error("Job monitor error", error=str(e))

            await asyncio.sleep(settings.job_monitor_interval_seconds)

    async def check_and_recover_characters(self, now: Optional[datetime] = None) -> int:
        """
        Fail every in-progress character not updated within
        stuck_generation_minutes.

        Returns:
            number of characters moved
        """
        now = now or datetime.utcnow()
        threshold = now - timedelta(minutes=settings.stuck_generation_minutes)

        async with AsyncSessionLocal() as session:
            result = await session.execute(
                select(Character).where(
                    and_(
                        Character.status.in_(
                            [
                                GenerationStatus.pending.value,
                                GenerationStatus.generating.value,
                                GenerationStatus.retrying.value,
                            ]
                        ),
                        Character.updated_at < threshold,
                    )
                )
            )
            stuck = result.scalars().all()

            for character in stuck:
                self._fail_stuck(character)

            await session.commit()

        if stuck:
            logger.info("Job monitor cycle complete", stuck=len(stuck))
        return len(stuck)

    def _fail_stuck(self, character: Character):
        status = GenerationStatus(character.status)
        if status == GenerationStatus.retrying:
            target = GenerationStatus.retry_failed
        else:
            if status == GenerationStatus.pending:
                apply_transition(character, GenerationStatus.generating)
            target = GenerationStatus.failed

        apply_transition(character, target, error=STUCK_MESSAGE)
        logger.warning(
            "Character marked as failed by monitor",
            character_id=character.id,
            previous_status=status.value,
            status=target.value,
        )


# Singleton instance
job_monitor = JobMonitor()


async def get_generation_metrics() -> dict:
    """Current generation metrics for the detailed health check"""
    async with AsyncSessionLocal() as session:
        now = datetime.utcnow()

        counts = {}
        for status in (GenerationStatus.pending, GenerationStatus.generating, GenerationStatus.retrying):
            result = await session.execute(
                select(func.count(Character.id)).where(Character.status == status.value)
            )
            counts[status.value] = result.scalar() or 0

        stuck_threshold = now - timedelta(minutes=settings.stuck_generation_minutes)
        stuck_result = await session.execute(
            select(func.count(Character.id)).where(
                and_(
                    Character.status.in_(
                        [GenerationStatus.generating.value, GenerationStatus.retrying.value]
                    ),
                    Character.updated_at < stuck_threshold,
                )
            )
        )
        stuck_count = stuck_result.scalar() or 0

        hour_ago = now - timedelta(hours=1)
        completed_result = await session.execute(
            select(func.count(Character.id)).where(
                and_(
                    Character.status == GenerationStatus.completed.value,
                    Character.updated_at > hour_ago,
                )
            )
        )
        completed_count = completed_result.scalar() or 0

        failed_result = await session.execute(
            select(func.count(Character.id)).where(
                and_(
                    Character.status.in_(
                        [GenerationStatus.failed.value, GenerationStatus.retry_failed.value]
                    ),
                    Character.updated_at > hour_ago,
                )
            )
        )
        failed_count = failed_result.scalar() or 0

        return {
            "pending": counts["pending"],
            "generating": counts["generating"],
            "retrying": counts["retrying"],
            "stuck": stuck_count,
            "completed_last_hour": completed_count,
            "failed_last_hour": failed_count,
            "success_rate": (
                completed_count / (completed_count + failed_count) * 100
                if (completed_count + failed_count) > 0
                else 100
            ),
        }
