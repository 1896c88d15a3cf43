"""Engine context: the collaborators shared by the lifecycle service.

Built once per process (see ``main.lifespan`` and ``services.mirror_worker``)
and passed explicitly, so tests can swap any collaborator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from services.document_store import IndexRegistry
from services.generation_cache import GenerationCache, build_generation_cache
from services.mirror_queue import MirrorQueue, RQMirrorQueue
from services.short_codes import ShortLivedCodeStore, build_short_code_store


@dataclass
class EngineContext:
    session_maker: async_sessionmaker
    mirror_queue: MirrorQueue
    cache: GenerationCache
    indexes: IndexRegistry
    code_store: ShortLivedCodeStore
    mirror_sync_enabled: bool = field(default_factory=lambda: bool(settings.MIRROR_SYNC_ENABLED))

    def mirror_session(self) -> AsyncSession:
        return self.session_maker()


def build_engine_context(session_maker: Optional[async_sessionmaker] = None) -> EngineContext:
    if session_maker is None:
        from database import async_session_maker

        session_maker = async_session_maker
    return EngineContext(
        session_maker=session_maker,
        mirror_queue=RQMirrorQueue(),
        cache=build_generation_cache(),
        indexes=IndexRegistry.from_settings(),
        code_store=build_short_code_store(),
    )
