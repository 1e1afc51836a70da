"""Device registry and poller.

:class:`Platform` signs in, enumerates the account's devices, creates or
restores one accessory per supported device and then polls every
accessory on a fixed interval.  Each poll cycle issues all per-accessory,
per-endpoint requests at once and regroups the responses positionally.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

# Register the built-in accessory types.
import iocare.purifier  # noqa: F401
from iocare._constants import DEFAULT_POLL_INTERVAL
from iocare.accessory import Accessory, AccessoryResponses, accessory_type
from iocare.client import Client
from iocare.errors import AuthError, ProtocolError, TransientNetworkError
from iocare.host import AccessoryHost, HostedAccessory, accessory_uuid
from iocare.models import Device

_LOGGER = logging.getLogger(__name__)


@dataclass
class PlatformConfig:
    username: str
    password: str
    poll_interval: float = DEFAULT_POLL_INTERVAL

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> PlatformConfig | None:
        """Build a config from user settings.

        Returns ``None`` when the username or password is missing or empty.
        """
        if not raw:
            return None
        username = raw.get("username")
        password = raw.get("password")
        if not username or not password:
            return None
        interval = raw.get("poll_interval") or DEFAULT_POLL_INTERVAL
        return cls(str(username), str(password), float(interval))


class PollSchedule:
    """Handle for the background poll loop.

    Returned by :meth:`Platform.start_polling`.  Call :meth:`stop` to
    cancel the loop, or :meth:`wait` to block until it ends.
    """

    def __init__(self, task: asyncio.Task[None], interval: float) -> None:
        self._task = task
        self.interval = interval

    @classmethod
    def start(cls, cycle: Callable[[], Awaitable[None]], interval: float) -> PollSchedule:
        return cls(asyncio.create_task(_run_every(cycle, interval)), interval)

    @property
    def running(self) -> bool:
        return not self._task.done()

    async def stop(self) -> None:
        """Cancel the loop and wait for cleanup."""
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await self._task

    async def wait(self) -> None:
        """Wait until the loop ends.

        Raises :class:`asyncio.CancelledError` if the task is cancelled
        externally (e.g. by *Ctrl-C*).
        """
        await self._task


async def _run_every(cycle: Callable[[], Awaitable[None]], interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await cycle()
        except Exception:
            _LOGGER.exception("IoCare poll cycle failed; retrying in %ss", interval)


class Platform:
    """Binds IoCare devices to an :class:`~iocare.host.AccessoryHost`.

    Pass an already signed-in *client* to skip the credential sign-in.
    Nothing here terminates the process: sign-in failures stop device
    configuration, failed poll cycles are logged and retried.
    """

    def __init__(
        self,
        host: AccessoryHost,
        config: PlatformConfig | None,
        *,
        client: Client | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self.host = host
        self.config = config
        self.client = client
        if poll_interval is None:
            poll_interval = config.poll_interval if config is not None else DEFAULT_POLL_INTERVAL
        self.poll_interval = poll_interval
        self.devices: list[Device] = []
        self.accessories: dict[str, Accessory] = {}
        self.schedule: PollSchedule | None = None
        self._cached: dict[str, HostedAccessory] = {}

        if config is None and client is None:
            _LOGGER.warning("IoCare is not configured: username and password are required")
            return

        for hosted in host.cached_accessories():
            self.configure_accessory(hosted)
        host.on_ready(self.start)
        host.on_shutdown(self.stop)

    def configure_accessory(self, hosted: HostedAccessory) -> None:
        """Remember an accessory restored from the host cache."""
        _LOGGER.debug("Loading accessory from cache: %s", hosted.display_name)
        self._cached[hosted.uuid] = hosted

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Sign in, configure every device, then start the poll schedule."""
        if self.client is None:
            assert self.config is not None
            try:
                self.client = await Client.login(self.config.username, self.config.password)
            except (AuthError, ProtocolError, TransientNetworkError):
                _LOGGER.exception("IoCare sign-in failed; devices will not be configured")
                return

        try:
            devices = await self.configure_devices()
        except TransientNetworkError:
            _LOGGER.exception("Failed to enumerate IoCare devices")
            return
        if not devices:
            return
        self.start_polling(self.poll_interval)

    def start_polling(self, interval: float = DEFAULT_POLL_INTERVAL) -> PollSchedule:
        if self.schedule is None or not self.schedule.running:
            self.schedule = PollSchedule.start(self.refresh_cycle, interval)
        return self.schedule

    async def stop(self) -> None:
        if self.schedule is not None:
            await self.schedule.stop()
            self.schedule = None

    async def configure_devices(self) -> list[Device] | None:
        """Enumerate devices, add or restore accessories and run the first poll.

        Cached accessories whose device is no longer listed, and accessories
        whose first configuration raised, are unregistered.  Returns ``None``
        when the vendor answered without a device list.
        """
        assert self.client is not None
        devices = await self.client.list_devices()
        if devices is None:
            return None
        if not devices:
            _LOGGER.warning("No IoCare devices found on this account")
        await self.client.refresh_connectivity(devices)
        self.devices = devices

        added = [a for a in (self.add_accessory(d) for d in devices) if a is not None]
        results = await asyncio.gather(*(a.configure() for a in added), return_exceptions=True)
        stale: list[HostedAccessory] = []
        for accessory, result in zip(added, results):
            if isinstance(result, Exception):
                _LOGGER.error("Failed to configure %s: %s", accessory.name, result)
                del self.accessories[accessory.hosted.uuid]
                self._cached.pop(accessory.hosted.uuid, None)
                stale.append(accessory.hosted)

        stale += [h for uuid, h in self._cached.items() if uuid not in self.accessories]
        if stale:
            for hosted in stale:
                _LOGGER.info("Removing accessory: %s", hosted.display_name)
                self._cached.pop(hosted.uuid, None)
            self.host.unregister_accessories(stale)
        return devices

    def add_accessory(self, device: Device) -> Accessory | None:
        """Create or restore the accessory for *device*.

        Returns ``None`` for unsupported device types.
        """
        assert self.client is not None
        cls = accessory_type(device.device_type)
        if cls is None:
            _LOGGER.warning(
                "Skipping %s: unsupported device type %r", device.name, device.device_type
            )
            return None

        uuid = accessory_uuid(device.barcode)
        hosted = self._cached.get(uuid)
        if hosted is None:
            _LOGGER.info("Adding new accessory: %s", device.name)
            hosted = self.host.create_accessory(uuid, device.name)
            accessory = cls(self.client, self.host, device, hosted)
            self.host.register_accessories([hosted])
        else:
            _LOGGER.info("Restoring existing accessory from cache: %s", hosted.display_name)
            accessory = cls(self.client, self.host, device, hosted)
        self.accessories[uuid] = accessory
        return accessory

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def poll_all(self, accessories: Sequence[Accessory]) -> list[AccessoryResponses]:
        """Fetch every endpoint of every accessory in one concurrent batch.

        The flat result list is split back per accessory by position: the
        first N responses belong to the first accessory's N endpoints, and
        so on.
        """
        calls = [(a, e) for a in accessories for e in a.declared_endpoints()]
        responses = await asyncio.gather(*(a.retrieve_state(e) for a, e in calls))

        grouped: list[AccessoryResponses] = []
        offset = 0
        for accessory in accessories:
            count = len(accessory.declared_endpoints())
            grouped.append(accessory.zip_responses(responses[offset : offset + count]))
            offset += count
        return grouped

    async def refresh_cycle(self) -> None:
        """One scheduled poll: re-check connectivity, poll all, apply."""
        accessories = list(self.accessories.values())
        if not accessories or self.client is None:
            return
        await self.client.refresh_connectivity([a.device for a in accessories])
        results = await self.poll_all(accessories)
        for accessory, responses in zip(accessories, results):
            await accessory.refresh(responses)
