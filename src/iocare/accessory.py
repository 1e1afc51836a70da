"""Accessory capability interface and the device-type registry.

Every supported device type is one :class:`Accessory` subclass registered
under its ``dvcTypeCd`` with :func:`register`.  The platform only ever
uses the capability surface defined here: declared endpoints, per-endpoint
payloads, applying poll results and sending commands.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

from iocare._constants import DEVICES_CONTROL, EndpointDescriptor
from iocare.errors import CommandRejected, TransientNetworkError
from iocare.models import AccessoryState, Command, Device

if TYPE_CHECKING:
    from iocare.client import Client, VendorResponse
    from iocare.host import AccessoryHost, HostedAccessory

_LOGGER = logging.getLogger(__name__)

AccessoryResponses = dict[EndpointDescriptor, "VendorResponse"]


class Lifecycle(Enum):
    UNINITIALIZED = "uninitialized"
    IDLE = "idle"
    REFRESHING = "refreshing"


class Accessory:
    """Base for one device exposed to the accessory host.

    Subclasses set :attr:`device_type` and :attr:`endpoints` and implement
    :meth:`apply_poll` and :meth:`attributes`.
    """

    device_type: ClassVar[str]
    endpoints: ClassVar[tuple[EndpointDescriptor, ...]] = (DEVICES_CONTROL,)
    # intent name => coroutine method taking one value
    intents: ClassVar[dict[str, str]] = {}

    def __init__(
        self,
        client: Client,
        host: AccessoryHost,
        device: Device,
        hosted: HostedAccessory,
    ) -> None:
        self.client = client
        self.host = host
        self.device = device
        self.hosted = hosted
        self.lifecycle = Lifecycle.UNINITIALIZED
        self.state = AccessoryState.from_context(hosted.context)

    @property
    def name(self) -> str:
        return self.hosted.display_name

    @property
    def configured(self) -> bool:
        return bool(self.hosted.context.get("configured"))

    def declared_endpoints(self) -> tuple[EndpointDescriptor, ...]:
        return self.endpoints

    def build_payload(self, endpoint: EndpointDescriptor) -> dict[str, Any]:
        """Query parameters for *endpoint*; the control endpoint by default."""
        return {
            "devId": self.device.barcode,
            "mqttDevice": "true",
            "dvcBrandCd": self.device.brand_code,
            "dvcTypeCd": self.device.device_type,
            "prodName": self.device.prod_name,
        }

    async def retrieve_state(self, endpoint: EndpointDescriptor) -> VendorResponse:
        return await self.client.gateway.call(
            endpoint.for_device(self.device.barcode), "GET", self.build_payload(endpoint)
        )

    def zip_responses(self, responses: Sequence[VendorResponse]) -> AccessoryResponses:
        """Pair responses with :meth:`declared_endpoints` by position."""
        return dict(zip(self.declared_endpoints(), responses))

    async def poll(self) -> AccessoryResponses:
        """Fetch every declared endpoint of this accessory concurrently."""
        responses = await asyncio.gather(
            *(self.retrieve_state(e) for e in self.declared_endpoints())
        )
        return self.zip_responses(responses)

    async def configure(self) -> None:
        """Initial poll; moves the accessory out of ``UNINITIALIZED``."""
        responses = await self.poll()
        if self.device.is_connected and _all_ok(responses):
            self.state = self.apply_poll(responses)
        self.lifecycle = Lifecycle.IDLE
        self.save_context(configured=True)
        self.publish()

    async def refresh(self, responses: AccessoryResponses) -> None:
        """Apply one scheduled poll; poll results overwrite local state."""
        self.lifecycle = Lifecycle.REFRESHING
        try:
            if not self.device.is_connected:
                _LOGGER.debug("Cannot refresh the accessory: %s", self.name)
                _LOGGER.debug("The accessory response: %s", responses)
                return
            if not _all_ok(responses):
                _LOGGER.warning("Skipping refresh of %s: vendor returned an error", self.name)
                return
            self.state = self.apply_poll(responses)
            self.save_context()
            self.publish()
        finally:
            self.lifecycle = Lifecycle.IDLE

    def apply_poll(self, responses: AccessoryResponses) -> AccessoryState:
        raise NotImplementedError

    def attributes(self) -> dict[str, Any]:
        raise NotImplementedError

    async def apply_command(self, intent: str, value: Any) -> list[Command]:
        """Dispatch a host-issued *intent* to the matching intent method.

        Returns the commands actually sent.
        """
        method = self.intents.get(intent)
        if method is None:
            raise CommandRejected(f"{self.name} does not support {intent!r}")
        return await getattr(self, method)(value)

    def publish(self) -> None:
        self.host.update_attributes(self.hosted, self.attributes())

    def save_context(self, *, configured: bool | None = None) -> None:
        context = self.hosted.context
        context.update(self.state.to_context())
        context["deviceType"] = self.device_type
        context["deviceInfo"] = self.device.to_api()
        if configured is not None:
            context["configured"] = configured

    async def send(self, commands: list[Command]) -> list[Command]:
        """Send *commands* as one batch.

        Vendor and network failures are logged and absorbed; the next poll
        reconciles local state.
        """
        if not commands:
            return commands
        try:
            response = await self.client.control(self.device, commands)
        except TransientNetworkError:
            _LOGGER.exception("Failed to send %s to %s", commands, self.name)
            return commands
        if not response.ok:
            _LOGGER.error("Vendor rejected %s for %s: %s", commands, self.name, response.error)
        self.save_context()
        self.publish()
        return commands


ACCESSORY_TYPES: dict[str, type[Accessory]] = {}


def register(cls: type[Accessory]) -> type[Accessory]:
    """Class decorator adding *cls* to :data:`ACCESSORY_TYPES`."""
    ACCESSORY_TYPES[cls.device_type] = cls
    return cls


def accessory_type(device_type: str) -> type[Accessory] | None:
    return ACCESSORY_TYPES.get(device_type)


def _all_ok(responses: AccessoryResponses) -> bool:
    return all(r.ok for r in responses.values())
