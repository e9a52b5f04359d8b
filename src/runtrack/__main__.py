"""
Main entrypoint: offline replay, manual retry, and the upload retry scheduler.

Usage:
    python -m runtrack replay run.gpx   # replay a recorded track, print totals
    python -m runtrack retry            # one upload sweep (failed uploads included)
    python -m runtrack                  # run the retry scheduler until Ctrl+C
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_replay(path: str) -> None:
    from runtrack.config import get_settings
    from runtrack.tracking.gps_filter import GpsFilterConfig
    from runtrack.tracking.replay import load_track, replay_track

    settings = get_settings()
    fixes = load_track(path)
    result = replay_track(
        fixes,
        config=GpsFilterConfig.from_settings(settings),
        threshold_meters=settings.segment_threshold_meters,
    )

    print(f"{result.fix_count} fixes, {result.total_distance_meters:.1f} m, "
          f"{len(result.segments)} segments")
    for reason, count in sorted(result.reasons.items(), key=lambda kv: kv[0].value):
        print(f"  {reason.value}: {count}")


def _build_queue():
    from runtrack.config import get_settings
    from runtrack.storage.engine import get_engine
    from runtrack.storage.kv import SqlKeyValueStore
    from runtrack.storage.upload_queue import OfflineUploadQueue

    settings = get_settings()
    store = SqlKeyValueStore(get_engine())
    return OfflineUploadQueue(store, max_attempts=settings.upload_max_attempts)


async def _run_retry() -> None:
    from runtrack.config import get_settings
    from runtrack.remote.client import SessionApiClient
    from runtrack.scheduler.jobs import queued_delivery

    queue = _build_queue()
    for upload in await queue.failed():
        await queue.retry_failed(upload.session_id)

    async with SessionApiClient.from_settings(get_settings()) as api:
        summary = await queue.retry_all(queued_delivery(queue, api))

    print(f"{summary.succeeded} uploaded, {summary.failed} failed, "
          f"{summary.abandoned} abandoned, {await queue.pending_count()} still pending")


async def _run_scheduler() -> None:
    from runtrack.config import get_settings
    from runtrack.remote.client import SessionApiClient
    from runtrack.scheduler.jobs import build_scheduler

    settings = get_settings()
    queue = _build_queue()

    async with SessionApiClient.from_settings(settings) as api:
        scheduler = build_scheduler(queue, api)
        scheduler.start()
        logger.info(
            "Scheduler started (upload retry every %d min, %d pending)",
            settings.upload_retry_minutes, await queue.pending_count(),
        )

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, SystemExit):
            logger.info("Shutting down...")
        finally:
            scheduler.shutdown()
            logger.info("Goodbye.")


if __name__ == "__main__":
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "replay":
        if len(sys.argv) < 3:
            print("usage: python -m runtrack replay <track.gpx|track.json>")
            sys.exit(2)
        _run_replay(sys.argv[2])
    elif command == "retry":
        asyncio.run(_run_retry())
    else:
        asyncio.run(_run_scheduler())
