"""Composition root: wires one sync engine instance together."""
from dataclasses import dataclass
from typing import Optional

from fieldsync.config import Settings, get_settings
from fieldsync.db.engine import get_engine
from fieldsync.remote.client import RemoteStoreClient
from fieldsync.remote.session import SessionStore
from fieldsync.storage.local import JobRepository, SQLKeyValueStore
from fieldsync.sync.identifiers import IdentifierNormalizer
from fieldsync.sync.media import MediaPipeline
from fieldsync.sync.orchestrator import SyncOrchestrator
from fieldsync.sync.queue import SyncQueue
from fieldsync.sync.reconciler import RemoteReconciler


@dataclass
class EngineService:
    settings: Settings
    store: SQLKeyValueStore
    jobs: JobRepository
    session: SessionStore
    remote: RemoteStoreClient
    media: MediaPipeline
    normalizer: IdentifierNormalizer
    reconciler: RemoteReconciler
    queue: SyncQueue
    orchestrator: SyncOrchestrator

    async def aclose(self) -> None:
        await self.orchestrator.stop()
        await self.remote.aclose()


def build_engine_service(
    engine=None,
    session: Optional[SessionStore] = None,
    remote=None,
    settings: Optional[Settings] = None,
) -> EngineService:
    """
    Build the full object graph. Nothing here touches the network or
    starts tasks; call `service.orchestrator.initialize()` for that.

    Args:
        engine: SQLAlchemy engine for the local store (default: get_engine()).
        session: Session provider (default: SessionStore()).
        remote: Remote store client (default: RemoteStoreClient(session)).
    """
    settings = settings or get_settings()
    store = SQLKeyValueStore(engine if engine is not None else get_engine())
    jobs = JobRepository(store)
    session = session or SessionStore()
    remote = remote or RemoteStoreClient(session, settings=settings)
    media = MediaPipeline(settings=settings)
    normalizer = IdentifierNormalizer(jobs)
    reconciler = RemoteReconciler(remote, session, jobs, media, normalizer, settings=settings)
    queue = SyncQueue(store, reconciler, max_retries=settings.max_retry_count)
    orchestrator = SyncOrchestrator(queue, reconciler, jobs, session, normalizer=normalizer, settings=settings)
    return EngineService(
        settings=settings,
        store=store,
        jobs=jobs,
        session=session,
        remote=remote,
        media=media,
        normalizer=normalizer,
        reconciler=reconciler,
        queue=queue,
        orchestrator=orchestrator,
    )
