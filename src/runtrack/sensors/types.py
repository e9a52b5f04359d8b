"""
Sensor types: channels, data sources, readings and the provider contract.

A biometric reading is either Present(value, source) or Absent. There is no
"default" value standing in for unknown: code that needs a number for the
wire format (where 0 means absent) converts explicitly at the boundary.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol, Union


class Channel(str, Enum):
    HEART_RATE = "heart_rate"
    CADENCE = "cadence"
    CALORIES = "calories"


class DataSource(str, Enum):
    WEARABLE = "wearable"
    PHONE_NATIVE = "phone_native"
    FORMULA = "formula"     # calories only: MET / heart-rate estimate
    NONE = "none"


# Fixed precedence for provider selection
PROVIDER_PRIORITY = (DataSource.WEARABLE, DataSource.PHONE_NATIVE)


@dataclass(frozen=True)
class Present:
    value: float
    source: DataSource

    @property
    def is_present(self) -> bool:
        return True


@dataclass(frozen=True)
class Absent:
    @property
    def value(self) -> None:
        return None

    @property
    def source(self) -> DataSource:
        return DataSource.NONE

    @property
    def is_present(self) -> bool:
        return False


ABSENT = Absent()

Reading = Union[Present, Absent]


def value_or_none(reading: Reading) -> Optional[float]:
    return reading.value if isinstance(reading, Present) else None


class BiometricProvider(Protocol):
    """
    One source of one biometric channel (e.g. wearable heart rate).

    subscribe() delivers each new sample to `callback`; None means the
    device reported "no value" for that sample.
    """

    def is_available(self) -> bool:
        ...

    async def subscribe(self, callback: Callable[[Optional[float]], None]) -> None:
        ...

    async def unsubscribe(self) -> None:
        ...
