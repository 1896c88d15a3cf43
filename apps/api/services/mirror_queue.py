"""Durable public-mirror task queue (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from services.timestamps import utcnow


logger = logging.getLogger(__name__)

MIRROR_OP_UPSERT = "upsert"
MIRROR_OP_UPDATE = "update"
MIRROR_OP_REMOVE = "remove"
MIRROR_OPS = (MIRROR_OP_UPSERT, MIRROR_OP_UPDATE, MIRROR_OP_REMOVE)
MIRROR_JOB_FUNCTION = "services.mirror_worker.process_mirror_task"


@dataclass(frozen=True)
class MirrorTask:
    op: str
    history_id: str
    uid: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    enqueued_at: str = field(default_factory=lambda: utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op": self.op,
            "history_id": self.history_id,
            "uid": self.uid,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "MirrorTask":
        op = str(raw.get("op") or "")
        history_id = str(raw.get("history_id") or "")
        if op not in MIRROR_OPS:
            raise ValueError(f"Unknown mirror op '{op}'")
        if not history_id:
            raise ValueError("Mirror task is missing history_id")
        uid = raw.get("uid")
        if op != MIRROR_OP_REMOVE and not uid:
            raise ValueError(f"Mirror {op} task requires uid")
        return cls(
            op=op,
            history_id=history_id,
            uid=str(uid) if uid else None,
            payload=raw.get("payload"),
            enqueued_at=str(raw.get("enqueued_at") or utcnow().isoformat()),
        )


class MirrorQueue(Protocol):
    async def enqueue_upsert(self, uid: str, history_id: str, snapshot: Dict[str, Any]) -> bool: ...

    async def enqueue_update(self, uid: str, history_id: str, patch: Dict[str, Any]) -> bool: ...

    async def enqueue_remove(self, history_id: str, uid: Optional[str] = None) -> bool: ...


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_mirror_queue() -> Queue:
    """Return the configured mirror queue."""
    return Queue(
        name=settings.MIRROR_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=settings.MIRROR_JOB_TIMEOUT_SECONDS,
    )


class RQMirrorQueue:
    """Enqueues mirror tasks on RQ. Enqueue failures are logged, never raised."""

    def __init__(self, queue_factory: Optional[Callable[[], Queue]] = None):
        self._queue_factory = queue_factory or get_mirror_queue

    def _enqueue_job(self, task: MirrorTask) -> Job:
        intervals = [max(int(value), 1) for value in settings.MIRROR_QUEUE_RETRY_INTERVALS] or [30]
        queue = self._queue_factory()
        return queue.enqueue(
            MIRROR_JOB_FUNCTION,
            task.to_dict(),
            retry=Retry(max=len(intervals), interval=intervals),
            job_timeout=settings.MIRROR_JOB_TIMEOUT_SECONDS,
            result_ttl=3600,
            failure_ttl=7 * 86400,
        )

    async def _enqueue(self, task: MirrorTask) -> bool:
        try:
            job = await asyncio.to_thread(self._enqueue_job, task)
        except Exception as exc:
            logger.warning(
                "Mirror %s task enqueue failed for %s: %s",
                task.op,
                task.history_id,
                exc,
            )
            return False
        logger.debug("Enqueued mirror %s task %s for %s", task.op, job.id, task.history_id)
        return True

    async def enqueue_upsert(self, uid: str, history_id: str, snapshot: Dict[str, Any]) -> bool:
        return await self._enqueue(MirrorTask(MIRROR_OP_UPSERT, history_id, uid=uid, payload=snapshot))

    async def enqueue_update(self, uid: str, history_id: str, patch: Dict[str, Any]) -> bool:
        return await self._enqueue(MirrorTask(MIRROR_OP_UPDATE, history_id, uid=uid, payload=patch))

    async def enqueue_remove(self, history_id: str, uid: Optional[str] = None) -> bool:
        return await self._enqueue(MirrorTask(MIRROR_OP_REMOVE, history_id, uid=uid))
