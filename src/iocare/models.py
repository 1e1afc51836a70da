"""Domain model for IoCare devices and purifier state."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from iocare.fields import FanLevel, Field, Mode

_LOGGER = logging.getLogger(__name__)


@dataclass
class Device:
    """Vendor identity and classification of one device.

    Only :attr:`net_status` changes after enumeration.
    """

    barcode: str
    device_type: str
    nickname: str = ""
    prod_name: str = ""
    brand_code: str = ""
    ord_no: str = ""
    admdong_cd: str = ""
    station_cd: str = ""
    sell_type_cd: str = ""
    membership_yn: str = ""
    self_manage_yn: str = ""
    reset_dttm: str = ""
    net_status: Any = None

    _API_KEYS = {
        "barcode": "barcode",
        "device_type": "dvcTypeCd",
        "nickname": "dvcNick",
        "prod_name": "prodName",
        "brand_code": "dvcBrandCd",
        "ord_no": "ordNo",
        "admdong_cd": "admdongCd",
        "station_cd": "stationCd",
        "sell_type_cd": "sellTypeCd",
        "membership_yn": "membershipYn",
        "self_manage_yn": "selfManageYn",
        "reset_dttm": "resetDttm",
        "net_status": "netStatus",
    }

    @classmethod
    def from_api(cls, info: dict[str, Any]) -> Device:
        kwargs: dict[str, Any] = {}
        for attr, key in cls._API_KEYS.items():
            value = info.get(key)
            if attr == "net_status":
                kwargs[attr] = value
            else:
                kwargs[attr] = "" if value is None else str(value)
        return cls(**kwargs)

    def to_api(self) -> dict[str, Any]:
        return {key: getattr(self, attr) for attr, key in self._API_KEYS.items()}

    @property
    def name(self) -> str:
        return self.nickname or self.prod_name or self.barcode

    @property
    def is_connected(self) -> bool:
        if isinstance(self.net_status, str):
            return self.net_status.strip().lower() in ("1", "y", "true", "online")
        return bool(self.net_status)


@dataclass
class LightInfo:
    on: bool = False
    brightness: int | None = 0


@dataclass
class ControlInfo:
    """Power, mode, fan and light state.

    ``fan_level`` is ``SHUTDOWN`` only while ``on`` is false.
    """

    on: bool = False
    mode: Mode = Mode.AUTO_DRIVING
    fan_level: FanLevel = FanLevel.SHUTDOWN
    light: LightInfo = field(default_factory=LightInfo)


@dataclass
class Telemetry:
    """Indoor air readings; ``None`` means unknown, never NaN."""

    humidity: float | None = 0.0
    pm10_density: float | None = 0.0
    pm25_density: float | None = 0.0
    voc_density: float | None = 0.0
    temperature: float | None = 0.0


@dataclass
class FilterInfo:
    name: str
    code: str
    percent_remaining: int


@dataclass
class AccessoryState:
    control: ControlInfo = field(default_factory=ControlInfo)
    telemetry: Telemetry = field(default_factory=Telemetry)
    filters: list[FilterInfo] = field(default_factory=list)

    def to_context(self) -> dict[str, Any]:
        control = asdict(self.control)
        control["mode"] = self.control.mode.value
        control["fan_level"] = int(self.control.fan_level)
        return {
            "controlInfo": control,
            "telemetry": asdict(self.telemetry),
            "filterInfos": [asdict(f) for f in self.filters],
        }

    @classmethod
    def from_context(cls, context: dict[str, Any]) -> AccessoryState:
        """Rebuild state from a persisted context, falling back to defaults."""
        try:
            return cls._parse_context(context)
        except (ValueError, TypeError, AttributeError) as e:
            _LOGGER.warning("Ignoring unreadable cached accessory state: %s", e)
            return cls()

    @classmethod
    def _parse_context(cls, context: dict[str, Any]) -> AccessoryState:
        state = cls()
        control = context.get("controlInfo")
        if isinstance(control, dict):
            light = control.get("light") or {}
            state.control = ControlInfo(
                on=bool(control.get("on", False)),
                mode=Mode(control.get("mode", Mode.AUTO_DRIVING.value)),
                fan_level=FanLevel(int(control.get("fan_level", 0))),
                light=LightInfo(bool(light.get("on", False)), light.get("brightness", 0)),
            )
        telemetry = context.get("telemetry")
        if isinstance(telemetry, dict):
            state.telemetry = Telemetry(**telemetry)
        filters = context.get("filterInfos")
        if isinstance(filters, list):
            state.filters = [FilterInfo(**f) for f in filters]
        return state


@dataclass(frozen=True)
class Command:
    """One ``funcId``/``cmdVal`` pair of a control request."""

    key: Field
    value: str

    def to_api(self) -> dict[str, str]:
        return {"funcId": self.key.value, "cmdVal": self.value}
