"""
Main entrypoint: runs the sync worker + APScheduler in one process.

FastAPI runs separately under uvicorn (the local control surface).

Usage:
    python -m fieldsync setup       # one-time sign-in
    python -m fieldsync sync        # run one pass now and exit
    python -m fieldsync status      # print sync + id migration status
    python -m fieldsync             # starts worker + scheduler
    uvicorn fieldsync.api.main:app --host 127.0.0.1 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_setup() -> None:
    from fieldsync.scripts.setup import run_setup
    run_setup()


async def _run_once() -> None:
    from fieldsync.bootstrap import build_engine_service

    service = build_engine_service()
    try:
        service.queue.load()
        service.normalizer.run_migration_if_needed()
        result = await service.orchestrator.force_sync()
    finally:
        await service.aclose()

    if result.success:
        print(f"Sync complete. Pending changes: {result.status.has_pending_changes}")
    else:
        print(f"Sync failed: {result.error}")
    for rejection in result.status.rejected_media:
        print(f"  photo {rejection.media_id} (job {rejection.record_id}): {rejection.kind}")
    if not result.success:
        sys.exit(1)


def _print_status() -> None:
    from fieldsync.bootstrap import build_engine_service

    service = build_engine_service()
    service.queue.load()
    migration = service.normalizer.migration_status()
    user = service.session.get_current_user()

    print(f"Signed in as:      {user.email or user.id if user else '(nobody)'}")
    print(f"Queued changes:    {len(service.queue)}")
    for item in service.queue.items:
        print(f"  {item.id}  retries={item.retry_count}")
    print(f"Local jobs:        {migration.total_jobs}")
    print(f"Id migration done: {migration.migration_complete}")
    if migration.jobs_with_old_ids or migration.photos_with_old_ids:
        print(
            f"Legacy ids left:   {migration.jobs_with_old_ids} jobs, "
            f"{migration.photos_with_old_ids} photos"
        )


async def _run_daemon() -> None:
    from fieldsync.bootstrap import build_engine_service
    from fieldsync.scheduler.jobs import build_scheduler

    service = build_engine_service()

    # Check session before starting
    if not service.session.has_session():
        logger.error("No session found. Run `python -m fieldsync setup` first.")
        sys.exit(1)

    await service.orchestrator.initialize()

    scheduler = build_scheduler(service.orchestrator, service.remote)
    scheduler.start()
    logger.info(
        "Scheduler started (sync every %d min, connectivity probe every %ds)",
        service.settings.sync_interval_minutes,
        service.settings.connectivity_probe_seconds,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown(wait=False)
        await service.aclose()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m fieldsync setup|sync|status` or just `python -m fieldsync`
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "setup":
        _run_setup()
    elif command == "sync":
        asyncio.run(_run_once())
    elif command == "status":
        _print_status()
    else:
        asyncio.run(_run_daemon())
