"""Tests for the sensor priority resolver."""
import asyncio

import pytest

from runtrack.sensors.resolver import SensorPriorityResolver
from runtrack.sensors.types import ABSENT, Channel, DataSource, Present


class FakeClock:
    def __init__(self, now: int = 1_740_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class FakeProvider:
    def __init__(self, available: bool = True, fail_subscribe: bool = False):
        self.available = available
        self.fail_subscribe = fail_subscribe
        self.callback = None
        self.subscribe_calls = 0
        self.unsubscribe_calls = 0

    def is_available(self) -> bool:
        return self.available

    async def subscribe(self, callback) -> None:
        self.subscribe_calls += 1
        if self.fail_subscribe:
            raise ConnectionError("bluetooth off")
        self.callback = callback

    async def unsubscribe(self) -> None:
        self.unsubscribe_calls += 1
        self.callback = None

    def emit(self, value) -> None:
        self.callback(value)


class SlowProvider(FakeProvider):
    """subscribe() blocks until released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def subscribe(self, callback) -> None:
        await self.release.wait()
        await super().subscribe(callback)


@pytest.fixture(name="clock")
def clock_fixture():
    return FakeClock()


@pytest.fixture(name="wearable")
def wearable_fixture():
    return FakeProvider()


@pytest.fixture(name="phone")
def phone_fixture():
    return FakeProvider()


@pytest.fixture(name="resolver")
def resolver_fixture(wearable, phone, clock):
    return SensorPriorityResolver(
        providers={
            Channel.HEART_RATE: {
                DataSource.WEARABLE: wearable,
                DataSource.PHONE_NATIVE: phone,
            },
        },
        stale_seconds=5.0,
        clock=clock,
    )


# ─── Priority ─────────────────────────────────────────────────────────────────

class TestPriority:
    @pytest.mark.asyncio
    async def test_wearable_wins_over_phone(self, resolver, wearable, phone):
        await resolver.start(Channel.HEART_RATE)
        wearable.emit(150)
        phone.emit(140)
        assert resolver.resolve(Channel.HEART_RATE) == Present(150, DataSource.WEARABLE)

    @pytest.mark.asyncio
    async def test_falls_back_when_wearable_unavailable(self, resolver, wearable, phone):
        await resolver.start(Channel.HEART_RATE)
        wearable.emit(150)
        phone.emit(140)
        wearable.available = False
        assert resolver.resolve(Channel.HEART_RATE) == Present(140, DataSource.PHONE_NATIVE)

    @pytest.mark.asyncio
    async def test_falls_back_when_wearable_reports_nothing(self, resolver, wearable, phone):
        await resolver.start(Channel.HEART_RATE)
        wearable.emit(None)
        phone.emit(140)
        assert resolver.resolve(Channel.HEART_RATE).source == DataSource.PHONE_NATIVE

    @pytest.mark.asyncio
    async def test_stale_sample_skipped(self, resolver, wearable, phone, clock):
        await resolver.start(Channel.HEART_RATE)
        wearable.emit(150)
        clock.advance(4)
        phone.emit(140)
        clock.advance(2)  # wearable sample is now 6 s old, phone 2 s
        assert resolver.resolve(Channel.HEART_RATE) == Present(140, DataSource.PHONE_NATIVE)

    @pytest.mark.asyncio
    async def test_everything_stale_is_absent(self, resolver, wearable, clock):
        await resolver.start(Channel.HEART_RATE)
        wearable.emit(150)
        clock.advance(5)
        assert resolver.resolve(Channel.HEART_RATE) is ABSENT

    @pytest.mark.asyncio
    async def test_unavailable_provider_never_subscribed(self, wearable, phone, clock):
        wearable.available = False
        resolver = SensorPriorityResolver(
            providers={Channel.HEART_RATE: {DataSource.WEARABLE: wearable, DataSource.PHONE_NATIVE: phone}},
            clock=clock,
        )
        await resolver.start(Channel.HEART_RATE)
        assert wearable.subscribe_calls == 0
        assert phone.subscribe_calls == 1

    @pytest.mark.asyncio
    async def test_subscribe_failure_is_not_fatal(self, phone, clock):
        broken = FakeProvider(fail_subscribe=True)
        resolver = SensorPriorityResolver(
            providers={Channel.HEART_RATE: {DataSource.WEARABLE: broken, DataSource.PHONE_NATIVE: phone}},
            clock=clock,
        )
        await resolver.start(Channel.HEART_RATE)
        phone.emit(133)
        assert resolver.resolve(Channel.HEART_RATE) == Present(133, DataSource.PHONE_NATIVE)


# ─── Absent, never fabricated ─────────────────────────────────────────────────

class TestAbsent:
    @pytest.mark.asyncio
    async def test_no_cadence_provider(self, resolver):
        await resolver.start_all()
        reading = resolver.resolve(Channel.CADENCE)
        assert reading is ABSENT
        assert reading.value is None
        assert reading.source == DataSource.NONE
        assert not reading.is_present

    def test_not_started_is_absent(self, resolver):
        assert resolver.resolve(Channel.HEART_RATE) is ABSENT


# ─── Lifecycle ────────────────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, resolver, wearable):
        await resolver.start(Channel.HEART_RATE)
        await resolver.start(Channel.HEART_RATE)
        assert wearable.subscribe_calls == 1
        assert resolver.is_started(Channel.HEART_RATE)

    @pytest.mark.asyncio
    async def test_stop_releases_every_subscription(self, resolver, wearable, phone):
        await resolver.start(Channel.HEART_RATE)
        await resolver.stop(Channel.HEART_RATE)
        assert wearable.unsubscribe_calls == 1
        assert phone.unsubscribe_calls == 1
        assert not resolver.is_started(Channel.HEART_RATE)

    @pytest.mark.asyncio
    async def test_stop_clears_values(self, resolver, wearable):
        await resolver.start(Channel.HEART_RATE)
        wearable.emit(150)
        await resolver.stop(Channel.HEART_RATE)
        assert resolver.resolve(Channel.HEART_RATE) is ABSENT

    @pytest.mark.asyncio
    async def test_stop_without_start_is_safe(self, resolver, wearable):
        await resolver.stop(Channel.HEART_RATE)
        assert wearable.unsubscribe_calls == 0

    @pytest.mark.asyncio
    async def test_stop_while_start_in_flight(self, clock):
        slow = SlowProvider()
        resolver = SensorPriorityResolver(
            providers={Channel.HEART_RATE: {DataSource.WEARABLE: slow}},
            clock=clock,
        )
        start_task = asyncio.create_task(resolver.start(Channel.HEART_RATE))
        await asyncio.sleep(0)

        await resolver.stop(Channel.HEART_RATE)
        slow.release.set()
        await start_task

        assert slow.unsubscribe_calls == 1
        assert slow.callback is None
        assert not resolver.is_started(Channel.HEART_RATE)

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, resolver, wearable):
        await resolver.start(Channel.HEART_RATE)
        await resolver.stop(Channel.HEART_RATE)
        await resolver.start(Channel.HEART_RATE)
        wearable.emit(155)
        assert resolver.resolve(Channel.HEART_RATE).value == 155
        assert wearable.subscribe_calls == 2


# ─── Calories ─────────────────────────────────────────────────────────────────

class TestCalories:
    def test_formula_when_no_provider(self, resolver):
        reading = resolver.resolve_calories(3600.0)
        assert reading.source == DataSource.FORMULA
        assert reading.value == pytest.approx(686.0)

    def test_formula_uses_heart_rate(self, resolver):
        without_hr = resolver.resolve_calories(1800.0)
        with_hr = resolver.resolve_calories(1800.0, heart_rate=160.0)
        assert with_hr.source == DataSource.FORMULA
        assert with_hr.value != without_hr.value

    @pytest.mark.asyncio
    async def test_provider_calories_preferred(self, clock):
        band = FakeProvider()
        resolver = SensorPriorityResolver(
            providers={Channel.CALORIES: {DataSource.WEARABLE: band}},
            clock=clock,
        )
        await resolver.start(Channel.CALORIES)
        band.emit(212.0)
        assert resolver.resolve_calories(1800.0) == Present(212.0, DataSource.WEARABLE)

    def test_from_settings(self, clock):
        from runtrack.config import Settings

        resolver = SensorPriorityResolver.from_settings(
            Settings(sensor_stale_seconds=2.0, body_weight_kg=60.0), clock=clock
        )
        assert resolver.stale_ms == 2000
        assert resolver.resolve_calories(3600.0).value == pytest.approx(9.8 * 60.0)
