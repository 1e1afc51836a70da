"""Accessory host contract and an in-process implementation.

The platform never talks to a smart-home bridge directly.  It consumes an
:class:`AccessoryHost`: something that restores cached accessories, fires
ready/shutdown callbacks, registers accessories and receives normalized
attribute values.  :class:`LocalHost` implements it in memory with a JSON
cache, which is what the CLI uses.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Protocol

_LOGGER = logging.getLogger(__name__)

_UUID_NAMESPACE = uuid.UUID("6ba7b812-9dad-11d1-80b4-00c04fd430c8")  # NAMESPACE_OID

Callback = Callable[[], Awaitable[None]]
AttributeListener = Callable[["HostedAccessory", dict[str, Any]], None]


def accessory_uuid(barcode: str) -> str:
    """Deterministic accessory id for a device barcode."""
    return str(uuid.uuid5(_UUID_NAMESPACE, barcode))


@dataclass
class HostedAccessory:
    """Host-side record of one accessory.

    ``context`` is opaque to the host and persisted across restarts:
    ``{deviceType, deviceInfo, controlInfo, telemetry, filterInfos, configured}``.
    """

    uuid: str
    display_name: str
    context: dict[str, Any] = field(default_factory=dict)


class AccessoryHost(Protocol):
    def on_ready(self, callback: Callback) -> None: ...

    def on_shutdown(self, callback: Callback) -> None: ...

    def cached_accessories(self) -> list[HostedAccessory]: ...

    def create_accessory(self, accessory_id: str, display_name: str) -> HostedAccessory: ...

    def register_accessories(self, accessories: list[HostedAccessory]) -> None: ...

    def unregister_accessories(self, accessories: list[HostedAccessory]) -> None: ...

    def update_attributes(self, accessory: HostedAccessory, attributes: dict[str, Any]) -> None: ...


class LocalHost:
    """In-memory accessory host with an optional JSON context cache."""

    def __init__(self, cache_file: Path | None = None) -> None:
        self._cache_file = cache_file
        self._ready: list[Callback] = []
        self._shutdown: list[Callback] = []
        self._listeners: list[AttributeListener] = []
        self._cached = self._load()
        self.accessories: dict[str, HostedAccessory] = {a.uuid: a for a in self._cached}
        self.attributes: dict[str, dict[str, Any]] = {}

    def on_ready(self, callback: Callback) -> None:
        self._ready.append(callback)

    def on_shutdown(self, callback: Callback) -> None:
        self._shutdown.append(callback)

    def subscribe(self, listener: AttributeListener) -> None:
        """Call *listener* on every attribute update."""
        self._listeners.append(listener)

    def cached_accessories(self) -> list[HostedAccessory]:
        return list(self._cached)

    def create_accessory(self, accessory_id: str, display_name: str) -> HostedAccessory:
        return HostedAccessory(accessory_id, display_name)

    def register_accessories(self, accessories: list[HostedAccessory]) -> None:
        for accessory in accessories:
            self.accessories[accessory.uuid] = accessory

    def unregister_accessories(self, accessories: list[HostedAccessory]) -> None:
        for accessory in accessories:
            self.accessories.pop(accessory.uuid, None)
            self.attributes.pop(accessory.uuid, None)
        removed = {a.uuid for a in accessories}
        self._cached = [a for a in self._cached if a.uuid not in removed]

    def update_attributes(self, accessory: HostedAccessory, attributes: dict[str, Any]) -> None:
        self.attributes[accessory.uuid] = dict(attributes)
        for listener in self._listeners:
            listener(accessory, attributes)

    async def launch(self) -> None:
        """Restore-then-ready: fire every ready callback once."""
        for callback in self._ready:
            await callback()

    async def close(self) -> None:
        """Fire shutdown callbacks and persist accessory contexts."""
        for callback in self._shutdown:
            await callback()
        self.save()

    def save(self) -> None:
        if self._cache_file is None:
            return
        self._cache_file.parent.mkdir(parents=True, exist_ok=True)
        self._cache_file.write_text(
            json.dumps([asdict(a) for a in self.accessories.values()], indent=2, default=str)
        )

    def _load(self) -> list[HostedAccessory]:
        if self._cache_file is None or not self._cache_file.exists():
            return []
        try:
            raw = json.loads(self._cache_file.read_text())
        except json.JSONDecodeError:
            _LOGGER.warning("Ignoring unreadable accessory cache %s", self._cache_file)
            return []
        return [
            HostedAccessory(a["uuid"], a.get("display_name", ""), a.get("context") or {})
            for a in raw
            if isinstance(a, dict) and "uuid" in a
        ]
