"""
Integration tests for RemoteReconciler.

Uses the in-memory FakeRemoteStore, a real local store (in-memory SQLite)
and real Pillow compression. No network calls are made.
"""
import pytest

from fieldsync.sync.identifiers import is_uuid
from fieldsync.sync.media import MediaPipeline
from fieldsync.sync.outcomes import ErrorKind
from fieldsync.sync.reconciler import RemoteReconciler

USER_ID = "3f6c1c1e-7d4b-4c2a-9a51-2f1d0f6b8e11"


def photo_key(settings, record, photo):
    return f"{settings.photo_bucket}/{photo.remote_path(USER_ID, record.id)}"


# ─── Create / update ──────────────────────────────────────────────────────────

class TestReconcile:
    @pytest.mark.asyncio
    async def test_new_job_with_photos(self, reconciler, fake_remote, jobs, settings, make_record, make_image):
        record = make_record(photo_refs=[make_image("a.jpg"), make_image("b.png", fmt="PNG")])
        jobs.save_all([record])

        outcome = await reconciler.reconcile(record)

        assert outcome.ok
        assert (outcome.synced_count, outcome.failed_count) == (1, 0)
        assert outcome.media_synced == 2
        assert list(fake_remote.tables["jobs"]) == [record.id]
        assert fake_remote.tables["jobs"][record.id]["user_id"] == USER_ID
        assert set(fake_remote.tables["job_photos"]) == {p.id for p in record.photos}
        for photo in record.photos:
            assert photo_key(settings, record, photo) in fake_remote.objects
            assert fake_remote.objects[photo_key(settings, record, photo)][:3] == b"\xff\xd8\xff"

    @pytest.mark.asyncio
    async def test_twice_is_idempotent(self, reconciler, fake_remote, jobs, make_record, make_image):
        record = make_record(photo_refs=[make_image()])
        jobs.save_all([record])

        first = await reconciler.reconcile(record)
        second = await reconciler.reconcile(record)

        for outcome in (first, second):
            assert outcome.ok
            assert (outcome.synced_count, outcome.failed_count) == (1, 0)
        assert len(fake_remote.tables["jobs"]) == 1
        assert len(fake_remote.tables["job_photos"]) == 1
        assert fake_remote.count("upload") == 1

    @pytest.mark.asyncio
    async def test_existing_photo_never_reuploaded(self, reconciler, fake_remote, jobs, make_record, make_image):
        record = make_record(photo_refs=[make_image()])
        photo = record.photos[0]
        fake_remote.tables["job_photos"][photo.id] = {"id": photo.id, "user_id": USER_ID}

        outcome = await reconciler.reconcile(record)

        assert outcome.media_synced == 1
        assert fake_remote.count("upload") == 0

    @pytest.mark.asyncio
    async def test_existing_photo_skipped_even_if_file_gone(self, reconciler, fake_remote, make_record, tmp_path):
        """A photo already remote needs no local bytes."""
        record = make_record(photo_refs=[str(tmp_path / "deleted.jpg")])
        photo = record.photos[0]
        fake_remote.tables["job_photos"][photo.id] = {"id": photo.id, "user_id": USER_ID}

        outcome = await reconciler.reconcile(record)

        assert outcome.failed_count == 0
        assert outcome.rejections == []

    @pytest.mark.asyncio
    async def test_existing_job_is_updated(self, reconciler, fake_remote, make_record):
        record = make_record(client_name="Old Name")
        fake_remote.tables["jobs"][record.id] = record.to_remote_row(USER_ID)
        record.client_name = "New Name"

        outcome = await reconciler.reconcile(record)

        assert outcome.ok
        assert fake_remote.tables["jobs"][record.id]["client_name"] == "New Name"
        assert fake_remote.count("insert", "jobs") == 0

    @pytest.mark.asyncio
    async def test_failed_probe_then_duplicate_insert_becomes_update(self, reconciler, fake_remote, make_record):
        record = make_record(client_name="After")
        fake_remote.tables["jobs"][record.id] = {**record.to_remote_row(USER_ID), "client_name": "Before"}
        fake_remote.fail["select"] = "Network error: timed out"

        outcome = await reconciler.reconcile(record)

        assert outcome.ok
        assert fake_remote.count("insert", "jobs") == 1
        assert fake_remote.count("update", "jobs") == 1
        assert fake_remote.tables["jobs"][record.id]["client_name"] == "After"

    @pytest.mark.asyncio
    async def test_object_uploaded_but_metadata_missing(self, reconciler, fake_remote, settings, make_record, make_image):
        """A previous attempt uploaded the file and died before the metadata insert."""
        record = make_record(photo_refs=[make_image()])
        photo = record.photos[0]
        fake_remote.objects[photo_key(settings, record, photo)] = b"earlier upload"

        outcome = await reconciler.reconcile(record)

        assert outcome.ok
        assert outcome.media_synced == 1
        assert photo.id in fake_remote.tables["job_photos"]

    @pytest.mark.asyncio
    async def test_job_upsert_failure_is_transient(self, reconciler, fake_remote, make_record):
        fake_remote.fail["insert"] = "Network error: connection reset"

        outcome = await reconciler.reconcile(make_record())

        assert not outcome.ok
        assert outcome.error_kind == ErrorKind.TRANSIENT
        assert outcome.error == "Network error: connection reset"
        assert outcome.retryable

    @pytest.mark.asyncio
    async def test_not_authenticated_sends_nothing(self, reconciler, fake_remote, fake_session, make_record):
        fake_session.user = None

        outcome = await reconciler.reconcile(make_record())

        assert outcome.error_kind == ErrorKind.NOT_AUTHENTICATED
        assert fake_remote.calls == []


# ─── Photos ───────────────────────────────────────────────────────────────────

class TestPhotoFailures:
    @pytest.mark.asyncio
    async def test_missing_photo_rejected_others_continue(self, reconciler, fake_remote, make_record, make_image, tmp_path):
        record = make_record(photo_refs=[str(tmp_path / "gone.jpg"), make_image()])

        outcome = await reconciler.reconcile(record)

        assert outcome.ok
        assert (outcome.synced_count, outcome.failed_count) == (1, 1)
        assert (outcome.media_synced, outcome.media_failed) == (1, 1)
        assert len(outcome.rejections) == 1
        rejection = outcome.rejections[0]
        assert rejection.kind == "FileMissing"
        assert rejection.media_id == record.photos[0].id
        assert rejection.record_id == record.id

    @pytest.mark.asyncio
    async def test_restored_photo_not_rejected_when_probe_fails(self, reconciler, fake_remote, make_record):
        record = make_record(photo_refs=[f"cloud://users/{USER_ID}/photos/j1/p1.jpg"])
        fake_remote.fail["select"] = "Network error: timed out"

        outcome = await reconciler.reconcile(record)

        assert outcome.ok
        assert outcome.media_failed == 1
        assert outcome.rejections == []
        assert fake_remote.count("upload") == 0

    @pytest.mark.asyncio
    async def test_oversize_photo_rejected(self, fake_remote, fake_session, jobs, normalizer, settings, make_record, make_image):
        tight = settings.model_copy(update={"max_media_bytes": 100})
        reconciler = RemoteReconciler(fake_remote, fake_session, jobs, MediaPipeline(settings=tight), normalizer, settings=tight)

        outcome = await reconciler.reconcile(make_record(photo_refs=[make_image()]))

        assert outcome.rejections[0].kind == "TooLarge"
        assert fake_remote.count("upload") == 0

    @pytest.mark.asyncio
    async def test_upload_failure_is_not_a_rejection(self, reconciler, fake_remote, make_record, make_image):
        fake_remote.fail["upload"] = "Network error: timed out"

        outcome = await reconciler.reconcile(make_record(photo_refs=[make_image()]))

        assert outcome.ok
        assert outcome.media_failed == 1
        assert outcome.rejections == []
        assert fake_remote.tables["job_photos"] == {}

    @pytest.mark.asyncio
    async def test_compressed_output_cleaned_up(self, reconciler, media, make_record, make_image):
        await reconciler.reconcile(make_record(photo_refs=[make_image()]))
        assert list(media.cache_dir.glob("*.jpg")) == []


# ─── Legacy ids ───────────────────────────────────────────────────────────────

class TestLegacyIds:
    @pytest.mark.asyncio
    async def test_ids_normalized_before_sending(self, reconciler, fake_remote, jobs, make_record, make_image):
        record = make_record("1700000000123", photo_refs=[make_image()], photo_ids=["99"])
        jobs.save_all([record])

        await reconciler.reconcile(record)

        (job_id,) = fake_remote.tables["jobs"]
        (photo_id,) = fake_remote.tables["job_photos"]
        assert is_uuid(job_id) and is_uuid(photo_id)
        assert job_id == record.id
        assert jobs.get("1700000000123") is None
        assert jobs.get(job_id).photos[0].id == photo_id

    @pytest.mark.asyncio
    async def test_stale_copy_does_not_duplicate_remote(self, reconciler, fake_remote, jobs, make_record, make_image):
        record = make_record("1700000000123", photo_refs=[make_image()], photo_ids=["99"])
        jobs.save_all([record])
        stale = record.model_copy(deep=True)

        await reconciler.reconcile(record)
        await reconciler.reconcile(stale)

        assert len(fake_remote.tables["jobs"]) == 1
        assert len(fake_remote.tables["job_photos"]) == 1


# ─── Full corpus & restore ────────────────────────────────────────────────────

class TestCorpus:
    @pytest.mark.asyncio
    async def test_reconcile_all_counts_and_updates_profile(self, reconciler, fake_remote, make_record):
        fake_remote.tables["profiles"][USER_ID] = {"id": USER_ID, "jobs_count": 0}
        records = [make_record() for _ in range(3)]

        report = await reconciler.reconcile_all(records)

        assert (report.synced, report.failed) == (3, 0)
        assert fake_remote.tables["profiles"][USER_ID]["jobs_count"] == 3

    @pytest.mark.asyncio
    async def test_reconcile_all_counts_failures(self, reconciler, fake_remote, make_record):
        fake_remote.fail["insert"] = "Network error"

        report = await reconciler.reconcile_all([make_record(), make_record()])

        assert (report.synced, report.failed) == (0, 2)

    @pytest.mark.asyncio
    async def test_reconcile_all_stops_without_session(self, reconciler, fake_remote, fake_session, make_record):
        fake_session.user = None
        report = await reconciler.reconcile_all([make_record()])
        assert report.not_authenticated is True
        assert fake_remote.calls == []

    @pytest.mark.asyncio
    async def test_restore_adds_missing_jobs_only(self, reconciler, fake_remote, jobs, make_record):
        local = make_record(client_name="Kept Locally")
        jobs.save_all([local])
        # Same job under another id: matched by client/created/service
        fake_remote.tables["jobs"]["r-dup"] = {**local.to_remote_row(USER_ID), "id": "r-dup"}
        remote_only = make_record()
        fake_remote.tables["jobs"][remote_only.id] = remote_only.to_remote_row(USER_ID)
        fake_remote.tables["job_photos"]["p1"] = {
            "id": "p1",
            "job_id": remote_only.id,
            "user_id": USER_ID,
            "photo_type": "after",
            "file_path": f"users/{USER_ID}/photos/{remote_only.id}/p1.jpg",
        }

        report = await reconciler.restore_from_remote()

        assert report.synced == 1
        stored = {r.id: r for r in jobs.load_all()}
        assert set(stored) == {local.id, remote_only.id}
        assert stored[remote_only.id].photos[0].local_ref.startswith("cloud://")

    @pytest.mark.asyncio
    async def test_restore_download_failure(self, reconciler, fake_remote, jobs):
        fake_remote.fail["select"] = "Network error"
        report = await reconciler.restore_from_remote()
        assert report.failed == 1
        assert jobs.load_all() == []

    @pytest.mark.asyncio
    async def test_restore_keeps_jobs_saved_during_download(self, reconciler, fake_remote, jobs, make_record):
        remote_only = make_record()
        fake_remote.tables["jobs"][remote_only.id] = remote_only.to_remote_row(USER_ID)
        saved_meanwhile = make_record(client_name="Saved Meanwhile")
        download = fake_remote.select

        async def select_with_local_write(table, columns="*", filters=None):
            # The user saves a job while photo metadata is still downloading
            if table == "job_photos":
                jobs.upsert(saved_meanwhile)
            return await download(table, columns, filters)

        fake_remote.select = select_with_local_write
        report = await reconciler.restore_from_remote()

        assert report.synced == 1
        assert {r.id for r in jobs.load_all()} == {remote_only.id, saved_meanwhile.id}


# ─── Job allowance ────────────────────────────────────────────────────────────

class TestJobAllowance:
    def _profile(self, fake_remote, tier, count):
        fake_remote.tables["profiles"][USER_ID] = {"id": USER_ID, "subscription_tier": tier, "jobs_count": count}

    @pytest.mark.asyncio
    async def test_under_limit(self, reconciler, fake_remote):
        self._profile(fake_remote, "free", 19)
        allowance = await reconciler.can_create_job()
        assert allowance.allowed is True
        assert (allowance.jobs_count, allowance.limit) == (19, 20)

    @pytest.mark.asyncio
    async def test_at_limit(self, reconciler, fake_remote):
        self._profile(fake_remote, "starter", 200)
        allowance = await reconciler.can_create_job()
        assert allowance.allowed is False
        assert "200/200" in allowance.reason

    @pytest.mark.asyncio
    async def test_unlimited_tier(self, reconciler, fake_remote):
        self._profile(fake_remote, "professional", 5000)
        allowance = await reconciler.can_create_job()
        assert allowance.allowed is True
        assert allowance.limit is None

    @pytest.mark.asyncio
    async def test_unknown_tier_gets_free_limit(self, reconciler, fake_remote):
        self._profile(fake_remote, "legacy", 20)
        allowance = await reconciler.can_create_job()
        assert allowance.allowed is False
        assert allowance.limit == 20

    @pytest.mark.asyncio
    async def test_missing_profile(self, reconciler):
        allowance = await reconciler.can_create_job()
        assert allowance.allowed is False
        assert allowance.reason == "User profile not found"

    @pytest.mark.asyncio
    async def test_lookup_failure_denies(self, reconciler, fake_remote):
        fake_remote.fail["select"] = "Network error"
        allowance = await reconciler.can_create_job()
        assert allowance.allowed is False
        assert allowance.reason == "Error checking job limit"

    @pytest.mark.asyncio
    async def test_signed_out(self, reconciler, fake_remote, fake_session):
        fake_session.user = None
        allowance = await reconciler.can_create_job()
        assert allowance.allowed is False
        assert fake_remote.calls == []
