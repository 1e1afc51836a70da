"""MARVEL air purifier: vendor payload mapping and command translation."""

from __future__ import annotations

import logging
import math
from typing import Any

from iocare._constants import AIR_DEVICES_FILTER_INFO, AIR_DEVICES_HOME, DEVICES_CONTROL, EndpointDescriptor
from iocare.accessory import Accessory, AccessoryResponses, Lifecycle, register
from iocare.errors import CommandRejected
from iocare.fields import (
    FAN_LEVEL_COMMANDS,
    DeviceType,
    FanLevel,
    Field,
    Light,
    Mode,
    Power,
    PurifierState,
    TargetPurifierState,
    brightness_to_percentage,
    classify_air_quality,
    fan_level_from_status,
    fan_level_to_percentage,
    parse_mode,
    percentage_to_brightness,
    percentage_to_fan_level,
)
from iocare.models import AccessoryState, Command, ControlInfo, FilterInfo, LightInfo, Telemetry

_LOGGER = logging.getLogger(__name__)

_MODE_LEVELS = {level: Mode(value) for level, (key, value) in FAN_LEVEL_COMMANDS.items() if key is Field.MODE}


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------


def parse_nullable_float(raw: object) -> float:
    """Parse *raw* as a float, defaulting to 0 if empty, missing or NaN."""
    if raw is None or raw == "":
        return 0.0
    try:
        value = float(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if math.isnan(value) or math.isinf(value) else value


def parse_nullable_int(raw: object) -> int:
    """Parse *raw* as an integer, defaulting to 0 if empty, missing or NaN."""
    return int(parse_nullable_float(raw))


def parse_control_info(data: object) -> ControlInfo:
    """Map the ``controlStatus`` block of the control endpoint."""
    status = data.get("controlStatus") if isinstance(data, dict) else None
    if not isinstance(status, dict):
        return ControlInfo()

    on = status.get(Field.POWER.value) == Power.ON.value
    mode = parse_mode(status.get(Field.MODE.value, Mode.AUTO_DRIVING.value))
    fan_level = fan_level_from_status(mode, status.get(Field.FAN_SPEED.value))
    if on and fan_level is FanLevel.SHUTDOWN:
        # Powered on but the speed is unreadable: assume the lowest fan speed.
        fan_level = FanLevel.WEAK
    return ControlInfo(
        on=on,
        mode=mode,
        fan_level=fan_level,
        light=LightInfo(
            on=status.get(Field.LIGHT.value, Light.OFF.value) == Light.ON.value,
            brightness=parse_nullable_int(status.get(Field.LIGHT_BRIGHTNESS.value)),
        ),
    )


def parse_telemetry(data: object) -> Telemetry:
    """Map the ``IAQ`` block of the home endpoint."""
    iaq = data.get("IAQ") if isinstance(data, dict) else None
    if not isinstance(iaq, dict):
        return Telemetry()
    return Telemetry(
        humidity=parse_nullable_float(iaq.get("humidity")),
        pm10_density=parse_nullable_float(iaq.get("dustpm10")),
        pm25_density=parse_nullable_float(iaq.get("dustpm25")),
        voc_density=parse_nullable_float(iaq.get("vocs")),
        temperature=parse_nullable_float(iaq.get("temperature")),
    )


def parse_filter_infos(data: object) -> list[FilterInfo]:
    filters = data.get("filterList") if isinstance(data, dict) else None
    if not isinstance(filters, list):
        return []
    return [
        FilterInfo(
            name=str(f.get("filterName", "")),
            code=str(f.get("filterCode", "")),
            percent_remaining=min(100, max(0, parse_nullable_int(f.get("filterPer")))),
        )
        for f in filters
        if isinstance(f, dict)
    ]


def fan_level_command(level: int) -> Command | None:
    """The mode or fan-speed command that selects rotation step *level*."""
    try:
        key, value = FAN_LEVEL_COMMANDS[FanLevel(level)]
    except (KeyError, ValueError):
        return None
    return Command(key, value)


# ---------------------------------------------------------------------------
# Accessory
# ---------------------------------------------------------------------------


@register
class MarvelAirPurifier(Accessory):
    """MARVEL air purifier with an air-quality sensor and a dimmable light."""

    device_type = DeviceType.MARVEL_AIR_PURIFIER.value
    endpoints = (DEVICES_CONTROL, AIR_DEVICES_HOME, AIR_DEVICES_FILTER_INFO)
    intents = {
        "power": "set_power",
        "fan": "set_fan_percentage",
        "light": "set_light_on",
        "brightness": "set_light_brightness",
        "auto": "set_auto_mode",
    }

    def build_payload(self, endpoint: EndpointDescriptor) -> dict[str, Any]:
        device = self.device
        if endpoint == AIR_DEVICES_HOME:
            return {
                "admdongCd": device.admdong_cd,
                "barcode": device.barcode,
                "dvcBrandCd": device.brand_code,
                "prodName": device.prod_name,
                "stationCd": device.station_cd,
                "zipCode": "",
                "resetDttm": device.reset_dttm,
                "deviceType": self.device_type,
                "mqttDevice": "true",
                "orderNo": device.ord_no,
                "membershipYn": device.membership_yn,
                "selfYn": device.self_manage_yn,
            }
        if endpoint == AIR_DEVICES_FILTER_INFO:
            return {
                "devId": device.barcode,
                "orderNo": device.ord_no,
                "sellTypeCd": device.sell_type_cd,
                "prodName": device.prod_name,
                "membershipYn": device.membership_yn,
                "mqttDevice": "true",
                "selfYn": device.self_manage_yn,
            }
        return super().build_payload(endpoint)

    def apply_poll(self, responses: AccessoryResponses) -> AccessoryState:
        def data(endpoint: EndpointDescriptor) -> object:
            response = responses.get(endpoint)
            return None if response is None else response.data

        return AccessoryState(
            control=parse_control_info(data(DEVICES_CONTROL)),
            telemetry=parse_telemetry(data(AIR_DEVICES_HOME)),
            filters=parse_filter_infos(data(AIR_DEVICES_FILTER_INFO)),
        )

    # ------------------------------------------------------------------
    # Exposed attributes
    # ------------------------------------------------------------------

    def attributes(self) -> dict[str, Any]:
        control = self.state.control
        telemetry = self.state.telemetry
        return {
            "active": control.on,
            "current_purifier_state": self.current_purifier_state(),
            "target_purifier_state": self.target_purifier_state(),
            "rotation_speed": self.rotation_speed_percentage(),
            "light_on": control.on and control.light.on,
            "brightness": self.brightness_percentage(),
            "air_quality": classify_air_quality(
                control.on, telemetry.pm10_density, telemetry.pm25_density
            ),
            "pm10_density": telemetry.pm10_density,
            "pm25_density": telemetry.pm25_density,
            "voc_density": telemetry.voc_density,
            "humidity": telemetry.humidity,
            "temperature": telemetry.temperature,
            "filters": [
                {"name": f.name, "code": f.code, "percent_remaining": f.percent_remaining}
                for f in self.state.filters
            ],
        }

    def current_purifier_state(self) -> PurifierState:
        control = self.state.control
        if not control.on:
            return PurifierState.INACTIVE
        if control.mode is Mode.SILENT:
            return PurifierState.IDLE
        return PurifierState.PURIFYING_AIR

    def target_purifier_state(self) -> TargetPurifierState:
        if self.state.control.mode is Mode.AUTO_DRIVING:
            return TargetPurifierState.AUTO
        return TargetPurifierState.MANUAL

    def rotation_speed_percentage(self) -> float:
        return fan_level_to_percentage(self.state.control.fan_level)

    def brightness_percentage(self) -> float | None:
        """Light brightness as 0..100, ``None`` if the light is not dimmable."""
        control = self.state.control
        if control.light.brightness is None:
            return None
        if not control.on:
            return 0.0
        return brightness_to_percentage(control.light.brightness)

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def set_power(self, on: bool) -> list[Command]:
        control = self.state.control
        if control.on == on:
            return []
        control.on = on
        if on:
            if control.fan_level is FanLevel.SHUTDOWN:
                control.fan_level = FanLevel.WEAK
        else:
            control.fan_level = FanLevel.SHUTDOWN
            control.light.on = False
            if control.light.brightness is not None:
                control.light.brightness = 0
        return await self.send([Command(Field.POWER, Power.ON.value if on else Power.OFF.value)])

    async def set_fan_percentage(self, percentage: float) -> list[Command]:
        """Select the rotation step nearest to *percentage*.

        Steps 1, 5 and 6 are sent as mode changes, 2..4 as fan speeds.
        """
        if not 0 <= percentage <= 100:
            raise CommandRejected("INVALID ROTATION SPEED")
        control = self.state.control
        # While auto-driving, writes during a refresh are echoes of the poll.
        if control.mode is Mode.AUTO_DRIVING and self.lifecycle is Lifecycle.REFRESHING:
            return []

        level = percentage_to_fan_level(percentage)
        if level == control.fan_level:
            return []
        commands: list[Command] = []
        if not control.on:
            commands.append(Command(Field.POWER, Power.ON.value))
        elif level == 0:
            return []

        command = fan_level_command(level)
        if command is None:
            _LOGGER.error(
                "Invalid fan rotation speed (current rotation speed: %d, 0003=%s)",
                level,
                control.fan_level.name,
            )
            raise CommandRejected("INVALID ROTATION SPEED")

        control.on = True
        self._apply_fan_level(FanLevel(level))
        commands.append(command)
        return await self.send(commands)

    async def set_light_on(self, on: bool) -> list[Command]:
        control = self.state.control
        if (control.on and control.light.on) == on:
            return []
        commands: list[Command] = []
        if on and not control.on:
            commands.append(Command(Field.POWER, Power.ON.value))
            control.on = True
            if control.fan_level is FanLevel.SHUTDOWN:
                control.fan_level = FanLevel.WEAK
        control.light.on = on
        commands.append(Command(Field.LIGHT, Light.ON.value if on else Light.OFF.value))
        return await self.send(commands)

    async def set_light_brightness(self, percentage: float) -> list[Command]:
        if not 0 <= percentage <= 100:
            raise CommandRejected("INVALID BRIGHTNESS")
        control = self.state.control
        if control.light.brightness is None:
            raise CommandRejected("Light brightness is not supported by this device")

        brightness = percentage_to_brightness(percentage)
        current = control.light.brightness if control.on else 0
        if brightness == current:
            return []
        control.light.brightness = brightness
        if brightness == 0:
            control.light.on = False
            return await self.send([Command(Field.LIGHT, Light.OFF.value)])

        commands: list[Command] = []
        if not control.on:
            commands.append(Command(Field.POWER, Power.ON.value))
            control.on = True
            if control.fan_level is FanLevel.SHUTDOWN:
                control.fan_level = FanLevel.WEAK
        commands.append(Command(Field.LIGHT_BRIGHTNESS, str(brightness)))
        return await self.send(commands)

    async def set_auto_mode(self, auto: bool) -> list[Command]:
        """Switch between auto-driving and the manual step for the current speed."""
        control = self.state.control
        if not control.on or control.fan_level is FanLevel.SHUTDOWN:
            return []
        if (control.mode is Mode.AUTO_DRIVING) == auto:
            return []
        if auto:
            control.mode = Mode.AUTO_DRIVING
            return await self.send([Command(Field.MODE, Mode.AUTO_DRIVING.value)])

        command = fan_level_command(control.fan_level)
        if command is None:
            _LOGGER.error(
                "Invalid fan rotation speed (current rotation speed: %d, 0003=%s)",
                int(control.fan_level),
                control.fan_level.name,
            )
            raise CommandRejected("INVALID ROTATION SPEED")
        self._apply_fan_level(control.fan_level)
        return await self.send([command])

    def _apply_fan_level(self, level: FanLevel) -> None:
        control = self.state.control
        control.fan_level = level
        control.mode = _MODE_LEVELS.get(level, Mode.MANUAL)
