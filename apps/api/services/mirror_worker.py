"""RQ job entrypoint that applies public-mirror tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from database import async_session_maker, engine
from services.mirror import apply_mirror_task
from services.mirror_queue import MirrorTask


logger = logging.getLogger(__name__)


async def process_mirror_task_async(raw_task: Dict[str, Any]) -> str:
    task = MirrorTask.from_dict(raw_task)
    async with async_session_maker() as db:
        try:
            outcome = await apply_mirror_task(db, task)
        except Exception:
            logger.exception("Mirror %s task failed for %s", task.op, task.history_id)
            raise
    logger.info("Mirror %s task for %s: %s", task.op, task.history_id, outcome)
    return outcome


async def _run_once(raw_task: Dict[str, Any]) -> str:
    try:
        return await process_mirror_task_async(raw_task)
    finally:
        # Pooled connections are bound to this job's event loop.
        await engine.dispose()


def process_mirror_task(raw_task: Dict[str, Any]) -> str:
    """RQ worker entrypoint for mirror tasks. Raising lets RQ retry the job."""
    return asyncio.run(_run_once(raw_task))
