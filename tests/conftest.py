"""Shared test fixtures."""
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
from PIL import Image
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from fieldsync.models.store import KeyValueEntry  # noqa: F401
from fieldsync.config import Settings
from fieldsync.models.job import MediaItem, WorkRecord
from fieldsync.remote.client import RemoteResult
from fieldsync.remote.session import CurrentUser
from fieldsync.storage.local import JobRepository, SQLKeyValueStore
from fieldsync.sync.identifiers import IdentifierNormalizer
from fieldsync.sync.media import MediaPipeline
from fieldsync.sync.orchestrator import SyncOrchestrator
from fieldsync.sync.queue import SyncQueue
from fieldsync.sync.reconciler import RemoteReconciler

USER_ID = "3f6c1c1e-7d4b-4c2a-9a51-2f1d0f6b8e11"


# ─── Fakes ────────────────────────────────────────────────────────────────────

class FakeSession:
    """Session provider with a settable user (None = signed out)."""

    def __init__(self, user: Optional[CurrentUser] = CurrentUser(id=USER_ID, email="tech@example.com")):
        self.user = user

    def get_current_user(self) -> Optional[CurrentUser]:
        return self.user

    def has_session(self) -> bool:
        return self.user is not None


class FakeRemoteStore:
    """
    In-memory remote: tables keyed by row id plus an object bucket.

    Duplicate inserts/uploads fail with the same free-text messages the real
    backend sends. Set `fail[op] = "message"` to make every call of that
    operation fail.
    """

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {
            "jobs": {},
            "job_photos": {},
            "profiles": {},
        }
        self.objects: Dict[str, bytes] = {}
        self.calls: List[tuple] = []
        self.fail: Dict[str, str] = {}
        self.online = True

    def count(self, op: str, target: Optional[str] = None) -> int:
        return sum(1 for c in self.calls if c[0] == op and (target is None or c[1] == target))

    def _matches(self, row: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
        return all(str(row.get(k)) == str(v) for k, v in (filters or {}).items())

    async def select(self, table, columns="*", filters=None) -> RemoteResult:
        self.calls.append(("select", table))
        if "select" in self.fail:
            return RemoteResult(error=self.fail["select"])
        rows = [dict(r) for r in self.tables[table].values() if self._matches(r, filters)]
        return RemoteResult(data=rows, status_code=200)

    async def insert(self, table, row) -> RemoteResult:
        self.calls.append(("insert", table))
        if "insert" in self.fail:
            return RemoteResult(error=self.fail["insert"])
        if row["id"] in self.tables[table]:
            return RemoteResult(error=f'duplicate key value violates unique constraint "{table}_pkey"')
        self.tables[table][row["id"]] = dict(row)
        return RemoteResult(data=[dict(row)], status_code=201)

    async def update(self, table, row, filters) -> RemoteResult:
        self.calls.append(("update", table))
        if "update" in self.fail:
            return RemoteResult(error=self.fail["update"])
        matched = [r for r in self.tables[table].values() if self._matches(r, filters)]
        for r in matched:
            r.update(row)
        return RemoteResult(data=[dict(r) for r in matched], status_code=200)

    async def upload_file(self, bucket, path, data, content_type="image/jpeg") -> RemoteResult:
        self.calls.append(("upload", path))
        if "upload" in self.fail:
            return RemoteResult(error=self.fail["upload"])
        key = f"{bucket}/{path}"
        if key in self.objects:
            return RemoteResult(error="The resource already exists")
        self.objects[key] = data
        return RemoteResult(data={"Key": key}, status_code=200)

    async def test_connection(self) -> bool:
        return self.online

    async def aclose(self) -> None:
        pass


# ─── Storage ──────────────────────────────────────────────────────────────────

@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="store")
def store_fixture(engine) -> SQLKeyValueStore:
    return SQLKeyValueStore(engine)


@pytest.fixture(name="jobs")
def jobs_fixture(store) -> JobRepository:
    return JobRepository(store)


@pytest.fixture(name="settings")
def settings_fixture(tmp_path) -> Settings:
    return Settings(
        remote_url="http://remote.test",
        remote_anon_key="anon-key",
        media_cache_dir=str(tmp_path / "media-cache"),
        record_delay_seconds=0,
    )


# ─── Engine components ────────────────────────────────────────────────────────

@pytest.fixture(name="fake_remote")
def fake_remote_fixture() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture(name="fake_session")
def fake_session_fixture() -> FakeSession:
    return FakeSession()


@pytest.fixture(name="normalizer")
def normalizer_fixture(jobs) -> IdentifierNormalizer:
    return IdentifierNormalizer(jobs)


@pytest.fixture(name="media")
def media_fixture(settings) -> MediaPipeline:
    return MediaPipeline(settings=settings)


@pytest.fixture(name="reconciler")
def reconciler_fixture(fake_remote, fake_session, jobs, media, normalizer, settings) -> RemoteReconciler:
    return RemoteReconciler(fake_remote, fake_session, jobs, media, normalizer, settings=settings)


@pytest.fixture(name="queue")
def queue_fixture(store, reconciler, settings) -> SyncQueue:
    return SyncQueue(store, reconciler, max_retries=settings.max_retry_count)


@pytest.fixture(name="orchestrator")
def orchestrator_fixture(queue, reconciler, jobs, fake_session, normalizer, settings) -> SyncOrchestrator:
    return SyncOrchestrator(queue, reconciler, jobs, fake_session, normalizer=normalizer, settings=settings)


# ─── Factories ────────────────────────────────────────────────────────────────

@pytest.fixture(name="make_image")
def make_image_fixture(tmp_path):
    """Write a photo to disk and return its path as a string."""

    def _make(name: str = "photo.jpg", size=(1600, 1200), fmt: str = "JPEG", color=(180, 90, 40)) -> str:
        path = tmp_path / "photos" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        Image.new("RGB", size, color).save(path, format=fmt)
        return str(path)

    return _make


@pytest.fixture(name="make_record")
def make_record_fixture():
    """Build a WorkRecord; each call gets a distinct client name and creation time."""
    counter = {"n": 0}

    def _make(record_id: Optional[str] = None, photo_refs=(), photo_ids=None, **fields) -> WorkRecord:
        counter["n"] += 1
        n = counter["n"]
        photo_ids = list(photo_ids or [str(uuid.uuid4()) for _ in photo_refs])
        defaults = dict(
            client_name=f"Client {n}",
            client_phone="555-0100",
            service_type="Plumbing",
            address=f"{n} Main St",
            created_at=datetime(2025, 3, 1, 9, 0) + timedelta(minutes=n),
        )
        defaults.update(fields)
        return WorkRecord(
            id=record_id or str(uuid.uuid4()),
            photos=[MediaItem(id=pid, local_ref=ref) for pid, ref in zip(photo_ids, photo_refs)],
            **defaults,
        )

    return _make
