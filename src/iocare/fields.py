"""Vendor field codes and value scales for IoCare air purifiers.

Maps between the raw control codes the vendor expects (``0001``, ``"1"``)
and the normalized values the platform exposes (booleans, 0..100
percentages, ordinal air-quality classes).
"""

from __future__ import annotations

from enum import Enum, IntEnum


class DeviceType(str, Enum):
    """``dvcTypeCd`` discriminator of a device."""

    MARVEL_AIR_PURIFIER = "02FMG"


class Field(str, Enum):
    """``funcId`` codes in ``controlStatus`` and control commands."""

    POWER = "0001"
    MODE = "0002"
    FAN_SPEED = "0003"
    LIGHT = "0007"
    AIR_QUALITY = "0008"
    LIGHT_BRIGHTNESS = "0031"


class Power(str, Enum):
    OFF = "0"
    ON = "1"


class Light(str, Enum):
    ON = "0"
    OFF = "3"


class Mode(str, Enum):
    MANUAL = "0"
    AUTO_DRIVING = "1"
    SILENT = "2"
    TURBO = "5"
    MY_PET = "8"


class FanSpeed(str, Enum):
    """Raw ``0003`` values; only the middle fan levels use them."""

    SHUTDOWN = "0"
    WEAK = "1"
    MEDIUM = "2"
    STRONG = "3"


class FanLevel(IntEnum):
    """Ordered fan levels; the ordinal is the 1..6 rotation step.

    Levels 1, 5 and 6 are modes on the vendor side, 2..4 are fan speeds.
    """

    SHUTDOWN = 0
    SILENT = 1
    WEAK = 2
    MEDIUM = 3
    STRONG = 4
    TURBO = 5
    MY_PET = 6


class AirQuality(IntEnum):
    UNKNOWN = 0
    EXCELLENT = 1
    GOOD = 2
    FAIR = 3
    INFERIOR = 4
    POOR = 5


class PurifierState(IntEnum):
    INACTIVE = 0
    IDLE = 1
    PURIFYING_AIR = 2


class TargetPurifierState(IntEnum):
    MANUAL = 0
    AUTO = 1


# 3 brightness steps => 100%
BRIGHTNESS_UNIT = 100 / 3.0

# 6 fan levels => 100%
ROTATION_SPEED_UNIT = 100 / 6.0

# (field, value) to send for each fan level
FAN_LEVEL_COMMANDS: dict[FanLevel, tuple[Field, str]] = {
    FanLevel.SILENT: (Field.MODE, Mode.SILENT.value),
    FanLevel.WEAK: (Field.FAN_SPEED, FanSpeed.WEAK.value),
    FanLevel.MEDIUM: (Field.FAN_SPEED, FanSpeed.MEDIUM.value),
    FanLevel.STRONG: (Field.FAN_SPEED, FanSpeed.STRONG.value),
    FanLevel.TURBO: (Field.MODE, Mode.TURBO.value),
    FanLevel.MY_PET: (Field.MODE, Mode.MY_PET.value),
}

_MODE_LEVELS: dict[Mode, FanLevel] = {
    Mode.SILENT: FanLevel.SILENT,
    Mode.TURBO: FanLevel.TURBO,
    Mode.MY_PET: FanLevel.MY_PET,
}

_SPEED_LEVELS: dict[FanSpeed, FanLevel] = {
    FanSpeed.WEAK: FanLevel.WEAK,
    FanSpeed.MEDIUM: FanLevel.MEDIUM,
    FanSpeed.STRONG: FanLevel.STRONG,
}

# Upper bounds of EXCELLENT, GOOD, FAIR and INFERIOR; above is POOR.
PM10_BREAKPOINTS = (10, 30, 80, 150)
PM25_BREAKPOINTS = (5, 15, 35, 75)


def _round_half_up(value: float) -> int:
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


def fan_level_to_percentage(level: int) -> float:
    return level * ROTATION_SPEED_UNIT


def percentage_to_fan_level(percentage: float) -> int:
    """Nearest rotation step for *percentage*; not range-checked."""
    return _round_half_up(percentage / ROTATION_SPEED_UNIT)


def brightness_to_percentage(brightness: int) -> float:
    return brightness * BRIGHTNESS_UNIT


def percentage_to_brightness(percentage: float) -> int:
    """Nearest brightness step in 0..3 for *percentage*."""
    return min(3, max(0, _round_half_up(percentage / BRIGHTNESS_UNIT)))


def parse_mode(raw: object) -> Mode:
    try:
        return Mode(str(raw))
    except ValueError:
        return Mode.MANUAL


def fan_level_from_status(mode: Mode, raw_speed: object) -> FanLevel:
    """Derive the fan level from the reported mode and ``0003`` value.

    Mode-backed levels win over the raw fan speed.
    """
    if mode in _MODE_LEVELS:
        return _MODE_LEVELS[mode]
    try:
        return _SPEED_LEVELS.get(FanSpeed(str(raw_speed)), FanLevel.SHUTDOWN)
    except ValueError:
        return FanLevel.SHUTDOWN


def _classify(density: float, breakpoints: tuple[int, int, int, int]) -> AirQuality:
    if density < 0:
        return AirQuality.UNKNOWN
    for quality, bound in zip(
        (AirQuality.EXCELLENT, AirQuality.GOOD, AirQuality.FAIR, AirQuality.INFERIOR),
        breakpoints,
    ):
        if density <= bound:
            return quality
    return AirQuality.POOR


def classify_pm10(density: float) -> AirQuality:
    return _classify(density, PM10_BREAKPOINTS)


def classify_pm25(density: float) -> AirQuality:
    return _classify(density, PM25_BREAKPOINTS)


def classify_air_quality(on: bool, pm10: float | None, pm25: float | None) -> AirQuality:
    """Overall air quality: the worse of the PM10 and PM2.5 classes.

    ``UNKNOWN`` when the device is off or neither density is available.
    """
    if not on:
        return AirQuality.UNKNOWN
    levels = []
    if pm10 is not None:
        levels.append(classify_pm10(pm10))
    if pm25 is not None:
        levels.append(classify_pm25(pm25))
    if not levels:
        return AirQuality.UNKNOWN
    return max(levels)
