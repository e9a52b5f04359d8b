"""
Offline upload queue — at-least-once delivery of finished sessions.

When the remote endSession call fails, the session's wire payload is stored
under `pending_upload:<session id>` with attempt_count=0. A retry sweep
(scheduler.jobs) later calls retry_all():

  success              → record deleted
  failure              → attempt_count += 1, last_error recorded
  attempts exhausted   → record moved to `failed_upload:<session id>`

retry_failed() puts a failed record back in the pending set with a fresh
attempt count.

Each record lives under its own key and is written in one transaction, so an
enqueue from the engine never rewrites a record the sweeper is working on.
The store is synchronous (SQLite); calls run in the default thread pool so
they don't block the asyncio event loop.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from runtrack.engine.errors import StorageFailure
from runtrack.models.upload import PendingUpload
from runtrack.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

PENDING_PREFIX = "pending_upload:"
FAILED_PREFIX = "failed_upload:"
DEFAULT_MAX_ATTEMPTS = 3

Deliver = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class RetrySummary:
    succeeded: int = 0
    failed: int = 0
    abandoned: int = 0


class OfflineUploadQueue:
    """Durable queue of sessions awaiting upload."""

    def __init__(
        self,
        store: KeyValueStore,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], int] = lambda: int(time.time() * 1000),
    ):
        self.store = store
        self.max_attempts = max_attempts
        self._clock = clock

    async def _run(self, fn, *args):
        """Run a sync store call in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args))

    # ─── Engine side ─────────────────────────────────────────────────────────

    async def enqueue(self, session_id: str, payload: Dict[str, Any]) -> PendingUpload:
        """
        Store a session for later upload.

        Raises:
            StorageFailure: if the durable write fails.
        """
        upload = PendingUpload(
            session_id=str(session_id),
            payload=payload,
            enqueued_at_millis=self._clock(),
            attempt_count=0,
        )
        await self._run(self.store.put, PENDING_PREFIX + upload.session_id, upload.to_dict())
        logger.info("Queued session %s for upload", upload.session_id)
        return upload

    # ─── Inspection ──────────────────────────────────────────────────────────

    async def get(self, session_id: str) -> Optional[PendingUpload]:
        data = await self._run(self.store.get, PENDING_PREFIX + str(session_id))
        return PendingUpload.from_dict(data) if data else None

    async def pending(self) -> List[PendingUpload]:
        return await self._load_all(PENDING_PREFIX)

    async def failed(self) -> List[PendingUpload]:
        return await self._load_all(FAILED_PREFIX)

    async def pending_count(self) -> int:
        return len(await self._run(self.store.keys, PENDING_PREFIX))

    async def failed_count(self) -> int:
        return len(await self._run(self.store.keys, FAILED_PREFIX))

    # ─── Sweeper side ────────────────────────────────────────────────────────

    async def assign_remote_id(self, session_id: str, remote_id: str) -> None:
        """Rewrite a pending payload's placeholder id with the id the server issued."""
        key = PENDING_PREFIX + str(session_id)
        data = await self._run(self.store.get, key)
        if not data:
            return
        upload = PendingUpload.from_dict(data)
        upload.payload = {**upload.payload, "id": remote_id}
        await self._run(self.store.put, key, upload.to_dict())
        logger.info("Pending upload %s now carries remote id %s", session_id, remote_id)

    async def retry_all(self, deliver: Deliver) -> RetrySummary:
        """
        Attempt delivery of every pending upload, oldest first.

        Args:
            deliver: Coroutine function sending one wire payload; any
                exception counts as a failed attempt.
        """
        succeeded = failed = abandoned = 0
        uploads = sorted(await self.pending(), key=lambda u: u.enqueued_at_millis)

        for upload in uploads:
            try:
                await deliver(upload.payload)
            except Exception as exc:
                failed += 1
                if await self._record_failure(upload, str(exc)):
                    abandoned += 1
                continue

            await self._run(self.store.delete, PENDING_PREFIX + upload.session_id)
            succeeded += 1
            logger.info("Uploaded queued session %s", upload.session_id)

        logger.info(
            "Retry sweep done: %d succeeded, %d failed (%d abandoned)",
            succeeded, failed, abandoned,
        )
        return RetrySummary(succeeded=succeeded, failed=failed, abandoned=abandoned)

    async def retry_failed(self, session_id: str) -> bool:
        """Move a failed upload back to pending with attempt_count reset."""
        key = FAILED_PREFIX + str(session_id)
        data = await self._run(self.store.get, key)
        if not data:
            logger.warning("Failed upload not found: %s", session_id)
            return False

        upload = PendingUpload.from_dict(data)
        upload.attempt_count = 0
        upload.last_error = None
        await self._run(self.store.put, PENDING_PREFIX + upload.session_id, upload.to_dict())
        await self._run(self.store.delete, key)
        return True

    async def clear(self) -> None:
        for prefix in (PENDING_PREFIX, FAILED_PREFIX):
            for key in await self._run(self.store.keys, prefix):
                await self._run(self.store.delete, key)

    # ─── Internal helpers ────────────────────────────────────────────────────

    async def _load_all(self, prefix: str) -> List[PendingUpload]:
        uploads = []
        for key in await self._run(self.store.keys, prefix):
            data = await self._run(self.store.get, key)
            if data:  # deleted by a concurrent sweep since listing
                uploads.append(PendingUpload.from_dict(data))
        return uploads

    async def _record_failure(self, upload: PendingUpload, error: str) -> bool:
        """Bump the attempt count. Returns True if the upload was abandoned."""
        upload.attempt_count += 1
        upload.last_error = error
        pending_key = PENDING_PREFIX + upload.session_id

        try:
            # delivery may have rewritten the payload (assign_remote_id)
            stored = await self._run(self.store.get, pending_key)
            if stored:
                upload.payload = stored["payload"]
            if upload.attempt_count >= self.max_attempts:
                await self._run(self.store.put, FAILED_PREFIX + upload.session_id, upload.to_dict())
                await self._run(self.store.delete, pending_key)
                logger.warning(
                    "Session %s abandoned after %d attempts: %s",
                    upload.session_id, upload.attempt_count, error,
                )
                return True

            await self._run(self.store.put, pending_key, upload.to_dict())
        except StorageFailure as exc:
            logger.error("Could not record retry for %s: %s", upload.session_id, exc)
            return False

        logger.info(
            "Upload of %s failed (attempt %d): %s",
            upload.session_id, upload.attempt_count, error,
        )
        return False
