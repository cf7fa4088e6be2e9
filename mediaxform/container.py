"""
Service wiring.

Builds the collaborators (cache, blob store, metadata store, queue) and the
services on top of them. The API keeps one container on app.state; each
Celery task run builds its own because it runs on a fresh event loop.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from mediaxform.core.cache import ICache, RedisCache, build_cache
from mediaxform.core.database import build_engine, build_session_maker, create_db_and_tables
from mediaxform.core.storage import IStorage, StorageFactory
from mediaxform.engines.transform.dispatcher import TransformDispatcher
from mediaxform.engines.transform.ledger import VersionLedger
from mediaxform.engines.transform.queue import ITransformQueue, build_queue
from mediaxform.engines.transform.worker import TransformWorker
from mediaxform.modules.media.repository import IMetadataStore, SqlMetadataStore
from mediaxform.modules.media.service import MediaService
from mediaxform.pipeline.engine import PipelineEngine


@dataclass
class ServiceContainer:
    db_engine: AsyncEngine
    cache: ICache
    storage: IStorage
    metadata: IMetadataStore
    queue: ITransformQueue
    ledger: VersionLedger
    media: MediaService
    dispatcher: TransformDispatcher
    worker: TransformWorker

    async def startup(self):
        await create_db_and_tables(self.db_engine)

    async def shutdown(self):
        if isinstance(self.cache, RedisCache):
            await self.cache.close()
        await self.db_engine.dispose()


def build_container(
    cache: Optional[ICache] = None,
    storage: Optional[IStorage] = None,
    queue: Optional[ITransformQueue] = None,
    database_url: Optional[str] = None,
    pipeline: Optional[PipelineEngine] = None,
) -> ServiceContainer:
    """Assemble services; any collaborator can be injected (tests, workers)."""
    db_engine = build_engine(database_url)
    cache = cache or build_cache()
    storage = storage or StorageFactory.get_storage()
    queue = queue or build_queue()
    metadata = SqlMetadataStore(build_session_maker(db_engine))
    ledger = VersionLedger(cache)

    media = MediaService(metadata=metadata, storage=storage, cache=cache, ledger=ledger)
    worker = TransformWorker(
        metadata=metadata,
        storage=storage,
        cache=cache,
        ledger=ledger,
        engine=pipeline or PipelineEngine(),
    )
    return ServiceContainer(
        db_engine=db_engine,
        cache=cache,
        storage=storage,
        metadata=metadata,
        queue=queue,
        ledger=ledger,
        media=media,
        dispatcher=TransformDispatcher(media=media, queue=queue),
        worker=worker,
    )


__all__ = ["ServiceContainer", "build_container"]
