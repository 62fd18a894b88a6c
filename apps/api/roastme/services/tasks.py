"""
Celery tasks for out-of-process character generation
"""
import asyncio
from celery import shared_task
import structlog


logger = structlog.get_logger()


def run_async(coro):
    """Run async function in sync context for Celery."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@shared_task(bind=True, max_retries=0)
def generate_character_task(self, character_id: str):
    """
    Celery task for first-time generation.

    The pipeline records its own failures on the character, so this task
    only re-raises what escaped it.
    """
    logger.info("Starting generation task", character_id=character_id)

    try:
        from roastme.services.orchestrator import run_generation

        run_async(run_generation(character_id))
        logger.info("Generation task finished", character_id=character_id)
        return {"status": "finished", "character_id": character_id}

    except Exception as e:
        logger.error("Generation task crashed", character_id=character_id, error=str(e))
        raise


@shared_task(bind=True, max_retries=0)
def retry_character_task(self, character_id: str, attempt: int):
    """
    Celery task for a user-triggered retry.

    Args:
        character_id: Character ID (already moved to retrying)
        attempt: retry attempt number, selects the prompt variant
    """
    logger.info("Starting retry task", character_id=character_id, attempt=attempt)

    try:
        from roastme.services.orchestrator import retry_generation

        run_async(retry_generation(character_id, attempt))
        logger.info("Retry task finished", character_id=character_id, attempt=attempt)
        return {"status": "finished", "character_id": character_id, "attempt": attempt}

    except Exception as e:
        logger.error(
            "Retry task crashed", character_id=character_id, attempt=attempt, error=str(e)
        )
        raise
