"""
APScheduler jobs for background sync.

Two interval jobs feed the orchestrator:
  - periodic_sync: the foreground timer (every SYNC_INTERVAL_MINUTES)
  - connectivity_probe: pings the remote and reports online/offline changes

Both are coroutines so they run on the event loop that owns the
orchestrator; neither starts a pass directly, they only raise requests.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from fieldsync.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(orchestrator, remote=None) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        orchestrator: SyncOrchestrator receiving the timer and probe signals.
        remote: RemoteStoreClient used by the connectivity probe. When
            omitted, no probe job is registered.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _periodic_sync,
        trigger="interval",
        minutes=settings.sync_interval_minutes,
        id="periodic_sync",
        replace_existing=True,
        kwargs={"orchestrator": orchestrator},
    )

    if remote is not None:
        scheduler.add_job(
            _probe_connectivity,
            trigger="interval",
            seconds=settings.connectivity_probe_seconds,
            id="connectivity_probe",
            replace_existing=True,
            kwargs={"orchestrator": orchestrator, "remote": remote},
        )

    return scheduler


async def _periodic_sync(orchestrator) -> None:
    """Timer tick: request a pass (ignored while backgrounded or offline)."""
    orchestrator.on_timer()


async def _probe_connectivity(orchestrator, remote) -> None:
    """Report a connectivity change to the orchestrator, if there was one."""
    try:
        online = await remote.test_connection()
    except Exception as exc:
        logger.debug("Connectivity probe failed: %s", exc)
        online = False

    if online != orchestrator.get_sync_status().is_online:
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        orchestrator.on_connectivity_change(online)
