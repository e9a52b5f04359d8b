"""
Session state machine — owns one running session from start to hand-off.

States:

    IDLE ──start()──▶ RUNNING ──pause()──▶ PAUSED
                        ▲  │                 │
                        │  └────resume()◀────┘
                        │
           stop() from RUNNING or PAUSED ──▶ COMPLETED ──reset()/start()──▶ IDLE

Single-writer discipline: location fixes (push callbacks or background
buffer polls) and timer ticks are posted to one asyncio.Queue and applied by
a single consumer task. Applying an event never awaits, so on the event loop
each application is atomic. Lifecycle commands first drain the queue
(flush()) and then mutate synchronously, so a command never interleaves
with a half-applied fix.

Foreground/background: in the foreground the machine subscribes to live
fixes; in the background it polls the durable location buffer every
background_poll_interval_ms. Both producers post the same FixReceived event
into the same queue; switching only swaps the producer and never touches
distance. Fixes at or before the last processed timestamp are dropped, so a
fix seen through both paths is counted once.

Failure policy:
  - permission refused → PermissionDenied from start(), state stays IDLE
  - lifecycle misuse   → InvalidTransition
  - begin call fails   → local placeholder id, tracking proceeds
  - end call fails     → payload goes to the offline upload queue
  - queue write fails  → logged; the completed snapshot is still returned
  - location errors    → logged; tracking continues with what it has
"""
import asyncio
import contextlib
import logging
import time
import uuid
from enum import Enum
from typing import Callable, Optional, Protocol, Sequence, Union

from runtrack.config import Settings, get_settings
from runtrack.engine.errors import InvalidTransition, PermissionDenied
from runtrack.engine.events import (
    EventChannel,
    FixOrigin,
    FixReceived,
    TimerTick,
    TrackingSnapshot,
    UploadOutcome,
    UploadStatus,
)
from runtrack.models.location import LocationFix
from runtrack.models.session import RunningSession, SessionState
from runtrack.remote.client import SessionApi, deliver_session
from runtrack.remote.payload import PLACEHOLDER_PREFIX, session_to_wire
from runtrack.sensors.resolver import SensorPriorityResolver
from runtrack.sensors.types import ABSENT, Channel, Present, Reading, value_or_none
from runtrack.storage.upload_queue import OfflineUploadQueue
from runtrack.tracking.gps_filter import GpsFilterConfig, RejectReason
from runtrack.tracking.pace import InstantPaceWindow, PaceSignal, average_pace
from runtrack.tracking.segments import BiometricSnapshot, SegmentEngine

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_INVALID = 5


def _now_ms() -> int:
    return int(time.time() * 1000)


class IngestionMode(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


# ─── Collaborator contracts ───────────────────────────────────────────────────

class LocationSource(Protocol):
    async def subscribe(
        self,
        config: GpsFilterConfig,
        on_fix: Callable[[LocationFix], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        ...

    async def unsubscribe(self) -> None:
        ...

    async def get_buffered_fixes_since(self, cursor: Optional[int]) -> Sequence[LocationFix]:
        ...


class LocationPermission(Protocol):
    async def request_location_permission(self) -> bool:
        ...


# ─── State machine ────────────────────────────────────────────────────────────

class SessionStateMachine:
    """Orchestrates one running session at a time."""

    def __init__(
        self,
        location_source: LocationSource,
        permissions: LocationPermission,
        api: SessionApi,
        upload_queue: OfflineUploadQueue,
        resolver: Optional[SensorPriorityResolver] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        """
        Args:
            location_source: Live subscription + durable background buffer.
            permissions: Location permission prompt.
            api: Remote session API (SessionApiClient in production).
            upload_queue: Where undeliverable sessions go.
            resolver: Sensor priority resolver; defaults to one with no
                providers (heart rate and cadence always absent).
            settings: Thresholds and intervals; defaults to get_settings().
            clock: Millisecond wall clock (injectable for tests).
        """
        settings = settings or get_settings()
        self._location = location_source
        self._permissions = permissions
        self._api = api
        self._queue = upload_queue
        self._clock = clock
        self.resolver = resolver or SensorPriorityResolver.from_settings(settings, clock=clock)

        self.filter_config = GpsFilterConfig.from_settings(settings)
        self.segment_threshold_meters = settings.segment_threshold_meters
        self.poll_interval_s = settings.background_poll_interval_ms / 1000.0
        self.timer_interval_s = settings.timer_interval_ms / 1000.0
        self._pace = InstantPaceWindow(settings.instant_pace_window_seconds)

        self._state = SessionState.IDLE
        self._mode = IngestionMode.FOREGROUND
        self._session: Optional[RunningSession] = None
        self._segments: Optional[SegmentEngine] = None
        self._starting = False

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: Optional[asyncio.Queue] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._upload_task: Optional[asyncio.Task] = None
        self._push_active = False

        self._last_fix_ts: Optional[int] = None
        self._poll_cursor: Optional[int] = None
        self._paused_total_ms = 0
        self._pause_started_ms: Optional[int] = None
        self._consecutive_invalid = 0
        self._heart_rate: Reading = ABSENT
        self._cadence: Reading = ABSENT

        self.location_updates: EventChannel[LocationFix] = EventChannel("location_updates")
        self.tracking_updates: EventChannel[TrackingSnapshot] = EventChannel("tracking_updates")
        self.pace_signals: EventChannel[PaceSignal] = EventChannel("pace_signals")
        self.upload_results: EventChannel[UploadOutcome] = EventChannel("upload_results")

    # ─── Read-only views ─────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def mode(self) -> IngestionMode:
        return self._mode

    @property
    def session(self) -> Optional[RunningSession]:
        """Snapshot of the current (or just completed) session."""
        return self._session.snapshot() if self._session else None

    def tracking_snapshot(self) -> TrackingSnapshot:
        s = self._session
        if s is None:
            return TrackingSnapshot(state=self._state, total_distance_meters=0.0, elapsed_seconds=0.0)
        speed_kmh = s.total_distance_meters / s.elapsed_seconds * 3.6 if s.elapsed_seconds > 0 else 0.0
        return TrackingSnapshot(
            state=self._state,
            total_distance_meters=s.total_distance_meters,
            elapsed_seconds=s.elapsed_seconds,
            average_pace=average_pace(s.total_distance_meters, s.elapsed_seconds),
            instant_pace=self._pace.current(),
            speed_kmh=speed_kmh,
            heart_rate=self._heart_rate,
            cadence=self._cadence,
            calories=s.last_calorie_estimate,
            segment_count=len(s.segments),
        )

    # ─── Lifecycle commands ──────────────────────────────────────────────────

    async def start(self, shoe_id: Optional[int] = None) -> Optional[RunningSession]:
        """
        Begin a new session.

        Raises:
            PermissionDenied: location permission refused (state stays IDLE).
        """
        if self._starting or self._state in (SessionState.RUNNING, SessionState.PAUSED):
            logger.warning("start() ignored: a session is already %s", self._state.value)
            return self.session
        if self._state == SessionState.COMPLETED:
            self.reset()

        self._starting = True
        try:
            if not await self._permissions.request_location_permission():
                raise PermissionDenied("Location permission denied")

            session_id, is_placeholder = await self._begin_remote(shoe_id)
            now = self._clock()
            self._session = RunningSession(
                id=session_id,
                start_timestamp_millis=now,
                state=SessionState.RUNNING,
                shoe_id=shoe_id,
                is_placeholder_id=is_placeholder,
            )
            self._segments = SegmentEngine(self.filter_config, self.segment_threshold_meters)
            self._segments.start(now)
            self._reset_counters()

            self._loop = asyncio.get_running_loop()
            self._events = asyncio.Queue()
            self._consumer_task = asyncio.create_task(self._consume_events())
            self._state = SessionState.RUNNING

            await self.resolver.start_all()
            await self._attach_source(cursor=now)
            self._timer_task = asyncio.create_task(self._run_timer())
        finally:
            self._starting = False

        logger.info("Session %s started (%s mode)", self._session.id, self._mode.value)
        self._publish_tracking()
        return self.session

    async def pause(self) -> None:
        self._require(SessionState.RUNNING, "pause")
        await self.flush()
        self._require(SessionState.RUNNING, "pause")

        now = self._clock()
        self._session.elapsed_seconds = self._elapsed_seconds(now)
        self._pause_started_ms = now
        self._set_state(SessionState.PAUSED)
        await self._detach_source()

        logger.info(
            "Session %s paused at %.1f m", self._session.id, self._session.total_distance_meters
        )
        self._publish_tracking()

    async def resume(self) -> None:
        self._require(SessionState.PAUSED, "resume")

        now = self._clock()
        paused_ms = now - self._pause_started_ms
        self._paused_total_ms += paused_ms
        self._pause_started_ms = None
        # movement while paused is not credited: the next fix is a new anchor
        self._segments.reanchor()
        self._pace.reset()
        self._set_state(SessionState.RUNNING)
        await self._attach_source(cursor=now)

        logger.info(
            "Session %s resumed after %.1f s (total paused %.1f s)",
            self._session.id, paused_ms / 1000.0, self._paused_total_ms / 1000.0,
        )
        self._publish_tracking()

    async def stop(self) -> RunningSession:
        """
        Finish the session and hand it off for upload.

        Returns immediately with the completed snapshot; the upload runs in
        the background (see wait_for_upload() and upload_results).
        """
        self._require_active("stop")
        await self.flush()
        self._require_active("stop")

        now = self._clock()
        if self._pause_started_ms is not None:
            self._paused_total_ms += now - self._pause_started_ms
            self._pause_started_ms = None
        # from here on, late fixes and ticks are ignored
        self._state = SessionState.COMPLETED

        self._refresh_biometrics(now)
        final = self._segments.finalize(now, self._segment_biometrics)
        if final is not None:
            self._session.segments.append(final)
        self._session.total_distance_meters = self._segments.total_distance_meters
        self._session.state = SessionState.COMPLETED
        snapshot = self._session.snapshot()

        await self._detach_source()
        await self.resolver.stop_all()
        await self._cancel(self._timer_task)
        self._timer_task = None
        await self._cancel(self._consumer_task)
        self._consumer_task = None
        self._events = None

        logger.info(
            "Session %s completed: %.1f m, %.0f s, %d segments",
            snapshot.id, snapshot.total_distance_meters,
            snapshot.elapsed_seconds, len(snapshot.segments),
        )
        self._publish_tracking()
        self._upload_task = asyncio.create_task(self._hand_off(snapshot))
        return snapshot

    def reset(self) -> None:
        """Return to IDLE after a completed session has been handed off."""
        if self._state in (SessionState.RUNNING, SessionState.PAUSED):
            raise InvalidTransition(f"reset() while session is {self._state.value}")
        self._state = SessionState.IDLE
        self._session = None
        self._segments = None

    async def wait_for_upload(self) -> Optional[UploadOutcome]:
        """Outcome of the last stop()'s upload, once it resolves."""
        if self._upload_task is None:
            return None
        return await self._upload_task

    async def push_progress(self) -> bool:
        """Send the in-progress record via updateSession. Failure is logged only."""
        if self._session is None or self._state not in (SessionState.RUNNING, SessionState.PAUSED):
            return False
        if self._session.is_placeholder_id:
            logger.debug("Skipping progress update for placeholder session %s", self._session.id)
            return False
        try:
            await self._api.update_session(session_to_wire(self._session.snapshot()))
        except Exception as exc:
            logger.warning("Progress update for %s failed: %s", self._session.id, exc)
            return False
        return True

    # ─── Host app foreground/background ──────────────────────────────────────

    async def enter_background(self) -> None:
        if self._mode == IngestionMode.BACKGROUND:
            return
        self._mode = IngestionMode.BACKGROUND
        if self._state != SessionState.RUNNING:
            return

        await self.flush()
        await self._unsubscribe_push()
        cursor = self._last_fix_ts if self._last_fix_ts is not None else self._session.start_timestamp_millis
        self._start_polling(cursor)
        logger.info("Session %s switched to background polling", self._session.id)

    async def enter_foreground(self) -> None:
        if self._mode == IngestionMode.FOREGROUND:
            return
        self._mode = IngestionMode.FOREGROUND
        if self._state != SessionState.RUNNING:
            return

        await self._stop_polling()
        # pick up whatever was buffered since the last poll before going live
        await self._poll_once()
        await self._subscribe_push()
        logger.info("Session %s switched to live updates", self._session.id)

    async def flush(self) -> None:
        """Wait until every posted event has been applied."""
        if self._events is None:
            return
        await asyncio.sleep(0)  # let thread-safe posts land in the queue
        await self._events.join()

    # ─── Event production ────────────────────────────────────────────────────

    def _post(self, event: Union[FixReceived, TimerTick]) -> None:
        events, loop = self._events, self._loop
        if events is None or loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            events.put_nowait(event)
        else:
            loop.call_soon_threadsafe(events.put_nowait, event)

    def _on_push_fix(self, fix: LocationFix) -> None:
        self._post(FixReceived(fix, FixOrigin.PUSH))

    def _on_location_error(self, exc: Exception) -> None:
        logger.warning("Location subscription error (tracking continues): %s", exc)

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.timer_interval_s)
            self._post(TimerTick())

    async def _run_poller(self) -> None:
        while True:
            await self._poll_once()
            await asyncio.sleep(self.poll_interval_s)

    async def _poll_once(self) -> None:
        try:
            fixes = await self._location.get_buffered_fixes_since(self._poll_cursor)
        except Exception as exc:
            logger.warning("Background buffer poll failed: %s", exc)
            return
        for fix in fixes:
            self._post(FixReceived(fix, FixOrigin.BUFFER))
            if not isinstance(fix.timestamp_millis, int):
                continue
            if self._poll_cursor is None or fix.timestamp_millis > self._poll_cursor:
                self._poll_cursor = fix.timestamp_millis

    # ─── Event application (single writer) ───────────────────────────────────

    async def _consume_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                if isinstance(event, FixReceived):
                    self._apply_fix(event.fix, event.origin)
                elif isinstance(event, TimerTick):
                    self._apply_tick()
            except Exception:
                logger.exception("Failed to apply %s", type(event).__name__)
            finally:
                self._events.task_done()

    def _apply_fix(self, fix: LocationFix, origin: FixOrigin = FixOrigin.PUSH) -> None:
        if self._state != SessionState.RUNNING:
            return
        if self._last_fix_ts is not None and fix.timestamp_millis <= self._last_fix_ts:
            logger.debug(
                "Dropping %s fix at %s: not newer than last processed",
                origin.value, fix.timestamp_millis,
            )
            return

        result = self._segments.ingest(fix, self._segment_biometrics)
        decision = result.decision
        if decision.reject_reason not in (RejectReason.INVALID_COORDINATE, RejectReason.INVALID_TIMESTAMP):
            self._last_fix_ts = fix.timestamp_millis

        if decision.accepted_for_path:
            self.location_updates.publish(fix)
        if decision.accepted_for_pace:
            self.pace_signals.publish(PaceSignal(
                timestamp_millis=fix.timestamp_millis,
                speed_meters_per_second=decision.speed_meters_per_second,
                accuracy_meters=fix.accuracy_meters,
                distance_delta_meters=decision.distance_meters,
            ))

        if decision.accepted_for_distance:
            self._consecutive_invalid = 0
            self._session.total_distance_meters = self._segments.total_distance_meters
            self._pace.add(fix.timestamp_millis, self._session.total_distance_meters)
            if result.closed_segment is not None:
                self._session.segments.append(result.closed_segment)
            self._publish_tracking()
            return

        if decision.reject_reason != RejectReason.NO_PREVIOUS_SAMPLE:
            self._consecutive_invalid += 1
            logger.debug("%s fix rejected: %s", origin.value, decision.reject_reason.value)
            if self._consecutive_invalid == MAX_CONSECUTIVE_INVALID:
                logger.warning("%d consecutive fixes rejected", self._consecutive_invalid)

    def _apply_tick(self) -> None:
        if self._state != SessionState.RUNNING:
            return
        self._refresh_biometrics(self._clock())
        self._publish_tracking()

    # ─── Biometrics / time bookkeeping ───────────────────────────────────────

    def _elapsed_seconds(self, now: int) -> float:
        paused = self._paused_total_ms
        if self._pause_started_ms is not None:
            paused += now - self._pause_started_ms
        return max(0, now - self._session.start_timestamp_millis - paused) / 1000.0

    def _refresh_biometrics(self, now: int) -> None:
        self._heart_rate = self.resolver.resolve(Channel.HEART_RATE)
        self._cadence = self.resolver.resolve(Channel.CADENCE)
        if isinstance(self._heart_rate, Present):
            self._session.last_heart_rate = self._heart_rate.value
        if isinstance(self._cadence, Present):
            self._session.last_cadence = self._cadence.value

        self._session.elapsed_seconds = self._elapsed_seconds(now)
        calories = self.resolver.resolve_calories(
            self._session.elapsed_seconds, heart_rate=value_or_none(self._heart_rate)
        )
        self._session.last_calorie_estimate = calories.value

    def _segment_biometrics(self) -> BiometricSnapshot:
        """Resolver output at the moment a segment closes."""
        if self._state == SessionState.RUNNING:
            self._refresh_biometrics(self._clock())
        return BiometricSnapshot(
            heart_rate=value_or_none(self._heart_rate),
            cadence=value_or_none(self._cadence),
            calories_total=self._session.last_calorie_estimate,
        )

    # ─── Sample source switching ─────────────────────────────────────────────

    async def _attach_source(self, cursor: int) -> None:
        if self._mode == IngestionMode.FOREGROUND:
            await self._subscribe_push()
        else:
            self._start_polling(cursor)

    async def _detach_source(self) -> None:
        await self._unsubscribe_push()
        await self._stop_polling()

    async def _subscribe_push(self) -> None:
        if self._push_active:
            return
        try:
            await self._location.subscribe(
                self.filter_config, self._on_push_fix, self._on_location_error
            )
        except Exception as exc:
            logger.warning("Location subscribe failed (tracking continues): %s", exc)
            return
        self._push_active = True

    async def _unsubscribe_push(self) -> None:
        if not self._push_active:
            return
        self._push_active = False
        try:
            await self._location.unsubscribe()
        except Exception as exc:
            logger.warning("Location unsubscribe failed: %s", exc)

    def _start_polling(self, cursor: int) -> None:
        if self._poll_task is not None:
            return
        self._poll_cursor = cursor
        self._poll_task = asyncio.create_task(self._run_poller())

    async def _stop_polling(self) -> None:
        await self._cancel(self._poll_task)
        self._poll_task = None

    # ─── Remote hand-off ─────────────────────────────────────────────────────

    async def _begin_remote(self, shoe_id: Optional[int]):
        try:
            return str(await self._api.begin_session(shoe_id)), False
        except Exception as exc:
            placeholder = f"{PLACEHOLDER_PREFIX}{uuid.uuid4().hex}"
            logger.warning("begin session failed (%s); tracking as %s", exc, placeholder)
            return placeholder, True

    async def _hand_off(self, snapshot: RunningSession) -> UploadOutcome:
        payload = None

        async def _adopt_remote_id(remote_id: str) -> None:
            nonlocal payload
            payload = {**payload, "id": remote_id}

        try:
            payload = session_to_wire(snapshot)
            confirmed = await deliver_session(self._api, payload, on_remote_id=_adopt_remote_id)
        except Exception as exc:
            if payload is None:
                logger.exception("Could not serialize session %s", snapshot.id)
                outcome = UploadOutcome(
                    session_id=snapshot.id, status=UploadStatus.STORAGE_FAILED, error=str(exc)
                )
                self.upload_results.publish(outcome)
                return outcome
            logger.warning("end session failed for %s (%s); queueing", snapshot.id, exc)
            try:
                await self._queue.enqueue(snapshot.id, payload)
            except Exception as storage_exc:
                logger.error("Could not queue session %s: %s", snapshot.id, storage_exc)
                outcome = UploadOutcome(
                    session_id=snapshot.id,
                    status=UploadStatus.STORAGE_FAILED,
                    error=str(storage_exc),
                )
            else:
                outcome = UploadOutcome(
                    session_id=snapshot.id, status=UploadStatus.QUEUED, error=str(exc)
                )
        else:
            outcome = UploadOutcome(
                session_id=snapshot.id, status=UploadStatus.UPLOADED, confirmed=confirmed
            )

        self.upload_results.publish(outcome)
        return outcome

    # ─── Internal helpers ────────────────────────────────────────────────────

    def _require(self, expected: SessionState, command: str) -> None:
        if self._state != expected:
            raise InvalidTransition(
                f"{command}() requires {expected.value}, session is {self._state.value}"
            )

    def _require_active(self, command: str) -> None:
        if self._state not in (SessionState.RUNNING, SessionState.PAUSED):
            raise InvalidTransition(f"{command}() while session is {self._state.value}")

    def _set_state(self, state: SessionState) -> None:
        self._state = state
        self._session.state = state

    def _reset_counters(self) -> None:
        self._last_fix_ts = None
        self._poll_cursor = None
        self._paused_total_ms = 0
        self._pause_started_ms = None
        self._consecutive_invalid = 0
        self._heart_rate = ABSENT
        self._cadence = ABSENT
        self._pace.reset()

    def _publish_tracking(self) -> None:
        self.tracking_updates.publish(self.tracking_snapshot())

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
