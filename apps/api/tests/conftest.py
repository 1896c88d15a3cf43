from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
import models  # noqa: F401
from services.context import EngineContext
from services.document_store import IndexRegistry
from services.generation_cache import NullGenerationCache, list_cache_key
from services.mirror import apply_mirror_task
from services.mirror_queue import MIRROR_OP_REMOVE, MIRROR_OP_UPDATE, MIRROR_OP_UPSERT, MirrorTask
from services.short_codes import InMemoryShortLivedCodeStore


class RecordingMirrorQueue:
    """Mirror queue that keeps tasks in memory until a test drains them."""

    def __init__(self):
        self.tasks: List[MirrorTask] = []
        self.accepting = True

    def _record(self, task: MirrorTask) -> bool:
        if not self.accepting:
            return False
        self.tasks.append(task)
        return True

    async def enqueue_upsert(self, uid: str, history_id: str, snapshot: Dict[str, Any]) -> bool:
        return self._record(MirrorTask(MIRROR_OP_UPSERT, history_id, uid=uid, payload=snapshot))

    async def enqueue_update(self, uid: str, history_id: str, patch: Dict[str, Any]) -> bool:
        return self._record(MirrorTask(MIRROR_OP_UPDATE, history_id, uid=uid, payload=patch))

    async def enqueue_remove(self, history_id: str, uid: Optional[str] = None) -> bool:
        return self._record(MirrorTask(MIRROR_OP_REMOVE, history_id, uid=uid))

    def ops_for(self, history_id: str) -> List[str]:
        return [task.op for task in self.tasks if task.history_id == history_id]

    def drain(self) -> List[MirrorTask]:
        tasks, self.tasks = self.tasks, []
        return tasks


class DictGenerationCache:
    """In-process cache double with the same keying as the Redis cache."""

    def __init__(self):
        self.items: Dict[str, Dict[str, Any]] = {}
        self.lists: Dict[str, Dict[str, Any]] = {}
        self.item_hits = 0
        self.list_hits = 0
        self.invalidations: List[tuple] = []

    async def get_item(self, uid, history_id):
        value = self.items.get(f"{uid}:{history_id}")
        if value is not None:
            self.item_hits += 1
        return value

    async def set_item(self, uid, history_id, value):
        self.items[f"{uid}:{history_id}"] = value

    async def get_list(self, uid, params):
        value = self.lists.get(list_cache_key(uid, params))
        if value is not None:
            self.list_hits += 1
        return value

    async def set_list(self, uid, params, value):
        self.lists[list_cache_key(uid, params)] = value

    async def invalidate(self, uid, history_id=None):
        self.invalidations.append((uid, history_id))
        if history_id:
            self.items.pop(f"{uid}:{history_id}", None)
        prefix = list_cache_key(uid, {}).rsplit(":", 1)[0]
        for key in [key for key in self.lists if key.startswith(prefix + ":")]:
            self.lists.pop(key, None)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "generation_engine.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def mirror_queue():
    return RecordingMirrorQueue()


@pytest.fixture
def engine_ctx(session_maker, mirror_queue):
    return EngineContext(
        session_maker=session_maker,
        mirror_queue=mirror_queue,
        cache=NullGenerationCache(),
        indexes=IndexRegistry.from_settings(),
        code_store=InMemoryShortLivedCodeStore(),
        mirror_sync_enabled=True,
    )


@pytest.fixture
def drain_mirror_queue(session_maker, mirror_queue):
    """Apply every queued mirror task, as an RQ worker would."""

    async def _drain() -> List[str]:
        outcomes = []
        for task in mirror_queue.drain():
            async with session_maker() as worker_db:
                outcomes.append(await apply_mirror_task(worker_db, task))
        return outcomes

    return _drain


@pytest.fixture
def generation_cache(engine_ctx):
    cache = DictGenerationCache()
    engine_ctx.cache = cache
    return cache
