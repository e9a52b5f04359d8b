"""
Sensor priority resolver.

For each biometric channel, providers are tried in fixed order:

  1. wearable device
  2. phone-native biometric API
  3. nothing → Absent

A provider is selected only if it is available, subscribed, and its latest
sample is present and younger than the staleness window. The resolver never
computes or guesses heart rate or cadence: when nothing qualifies the result
is Absent.

Calories follow the same precedence but end in a deterministic formula
(see sensors.calories) instead of Absent: calories are always producible.

start()/stop() are per channel. start() is idempotent and subscribes every
available provider of the channel, so falling back to a lower-priority one
needs no resubscription. stop() releases every subscription it holds, even
when the channel never produced a value, and is safe while start() is still
awaiting a provider.
"""
import logging
import time
from typing import Callable, Dict, List, Mapping, Optional

from runtrack.sensors.calories import (
    DEFAULT_AGE_YEARS,
    DEFAULT_BODY_WEIGHT_KG,
    estimate_calories,
)
from runtrack.sensors.types import (
    ABSENT,
    PROVIDER_PRIORITY,
    BiometricProvider,
    Channel,
    DataSource,
    Present,
    Reading,
)

logger = logging.getLogger(__name__)

DEFAULT_STALE_SECONDS = 5.0

ProviderMap = Mapping[Channel, Mapping[DataSource, BiometricProvider]]


def _now_ms() -> int:
    return int(time.time() * 1000)


class _ProviderSlot:
    """Latest sample from one provider of one channel."""

    def __init__(self, source: DataSource, provider: BiometricProvider):
        self.source = source
        self.provider = provider
        self.subscribed = False
        self.value: Optional[float] = None
        self.received_at_ms: Optional[int] = None

    def clear(self) -> None:
        self.subscribed = False
        self.value = None
        self.received_at_ms = None


class SensorPriorityResolver:
    """Resolves heart rate, cadence and calories from prioritized providers."""

    def __init__(
        self,
        providers: Optional[ProviderMap] = None,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
        body_weight_kg: float = DEFAULT_BODY_WEIGHT_KG,
        age_years: int = DEFAULT_AGE_YEARS,
        clock: Callable[[], int] = _now_ms,
    ):
        """
        Args:
            providers: {channel: {source: provider}}. Missing entries simply
                mean "no such provider"; sources outside PROVIDER_PRIORITY
                are ignored.
            stale_seconds: Samples older than this are not used.
            body_weight_kg, age_years: Calorie formula inputs.
            clock: Millisecond clock (injectable for tests).
        """
        self.stale_ms = int(stale_seconds * 1000)
        self.body_weight_kg = body_weight_kg
        self.age_years = age_years
        self._clock = clock

        self._slots: Dict[Channel, List[_ProviderSlot]] = {}
        for channel in Channel:
            by_source = (providers or {}).get(channel, {})
            self._slots[channel] = [
                _ProviderSlot(source, by_source[source])
                for source in PROVIDER_PRIORITY
                if source in by_source
            ]
        self._started: Dict[Channel, bool] = {c: False for c in Channel}
        # bumped on every stop(); lets an in-flight start() notice it was cancelled
        self._generation: Dict[Channel, int] = {c: 0 for c in Channel}

    @classmethod
    def from_settings(
        cls,
        settings,
        providers: Optional[ProviderMap] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> "SensorPriorityResolver":
        return cls(
            providers=providers,
            stale_seconds=settings.sensor_stale_seconds,
            body_weight_kg=settings.body_weight_kg,
            age_years=settings.age_years,
            clock=clock,
        )

    # ─── Subscription lifecycle ──────────────────────────────────────────────

    def is_started(self, channel: Channel) -> bool:
        return self._started[channel]

    async def start(self, channel: Channel) -> None:
        """Subscribe every available provider of `channel`. Idempotent."""
        if self._started[channel]:
            return
        self._started[channel] = True
        generation = self._generation[channel]

        for slot in self._slots[channel]:
            if not self._safe_is_available(slot):
                logger.info("%s %s provider unavailable", channel.value, slot.source.value)
                continue
            try:
                await slot.provider.subscribe(self._make_callback(slot))
            except Exception as exc:
                logger.warning(
                    "%s %s subscribe failed: %s", channel.value, slot.source.value, exc
                )
                continue
            slot.subscribed = True

            if self._generation[channel] != generation:
                # stop() ran while we were awaiting subscribe()
                await self._release(channel, slot)
                return

        logger.info(
            "%s monitoring started (%d provider(s))",
            channel.value, sum(1 for s in self._slots[channel] if s.subscribed),
        )

    async def stop(self, channel: Channel) -> None:
        """Release all subscriptions of `channel`. Safe to call at any time."""
        self._started[channel] = False
        self._generation[channel] += 1
        for slot in self._slots[channel]:
            if slot.subscribed:
                await self._release(channel, slot)
            slot.clear()

    async def start_all(self) -> None:
        for channel in Channel:
            await self.start(channel)

    async def stop_all(self) -> None:
        for channel in Channel:
            await self.stop(channel)

    # ─── Resolution ──────────────────────────────────────────────────────────

    def resolve(self, channel: Channel) -> Reading:
        """Highest-priority fresh value for `channel`, or ABSENT."""
        now = self._clock()
        for slot in self._slots[channel]:
            if not slot.subscribed or slot.value is None or slot.received_at_ms is None:
                continue
            if not self._safe_is_available(slot):
                continue
            if now - slot.received_at_ms >= self.stale_ms:
                continue
            return Present(value=slot.value, source=slot.source)
        return ABSENT

    def resolve_calories(
        self,
        elapsed_seconds: float,
        heart_rate: Optional[float] = None,
    ) -> Present:
        """Provider calories if any, else the formula estimate (never Absent)."""
        reading = self.resolve(Channel.CALORIES)
        if isinstance(reading, Present):
            return reading
        value = estimate_calories(
            elapsed_seconds,
            heart_rate=heart_rate,
            body_weight_kg=self.body_weight_kg,
            age_years=self.age_years,
        )
        return Present(value=value, source=DataSource.FORMULA)

    # ─── Internal helpers ────────────────────────────────────────────────────

    def _make_callback(self, slot: _ProviderSlot) -> Callable[[Optional[float]], None]:
        def _on_sample(value: Optional[float]) -> None:
            slot.value = value
            slot.received_at_ms = self._clock()
        return _on_sample

    @staticmethod
    def _safe_is_available(slot: _ProviderSlot) -> bool:
        try:
            return bool(slot.provider.is_available())
        except Exception as exc:
            logger.warning("%s availability check failed: %s", slot.source.value, exc)
            return False

    async def _release(self, channel: Channel, slot: _ProviderSlot) -> None:
        try:
            await slot.provider.unsubscribe()
        except Exception as exc:
            logger.warning(
                "%s %s unsubscribe failed: %s", channel.value, slot.source.value, exc
            )
        slot.clear()
