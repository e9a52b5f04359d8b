"""
APScheduler jobs for the offline upload queue.

Every upload_retry_minutes the sweeper re-sends queued sessions. Sessions
that exhaust upload_max_attempts are moved to the failed set and left for
a manual `python -m runtrack retry`.

The scheduler runs in the same process as the tracking engine.
"""
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from runtrack.config import get_settings
from runtrack.remote.client import SessionApi, deliver_session
from runtrack.storage.upload_queue import OfflineUploadQueue

logger = logging.getLogger(__name__)


def build_scheduler(queue: OfflineUploadQueue, api: SessionApi) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        queue: Offline upload queue to sweep.
        api: Remote session API used for delivery.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _retry_pending_uploads,
        trigger="interval",
        minutes=settings.upload_retry_minutes,
        id="retry_pending_uploads",
        replace_existing=True,
        kwargs={"queue": queue, "api": api},
    )

    return scheduler


def queued_delivery(queue: OfflineUploadQueue, api: SessionApi):
    """Deliver callable for retry_all(); a placeholder's new remote id is stored before ending."""

    async def _deliver(payload):
        placeholder = payload.get("id")
        return await deliver_session(
            api, payload, on_remote_id=lambda remote_id: queue.assign_remote_id(placeholder, remote_id)
        )

    return _deliver


async def _retry_pending_uploads(queue: OfflineUploadQueue, api: SessionApi) -> None:
    """Sweep job: deliver every pending upload once."""
    logger.info("Upload retry sweep starting at %s", datetime.now(timezone.utc).isoformat())

    try:
        if not await queue.pending_count():
            logger.info("No pending uploads")
            return
        await queue.retry_all(queued_delivery(queue, api))
    except Exception as exc:
        logger.error("Upload retry sweep failed: %s", exc)
