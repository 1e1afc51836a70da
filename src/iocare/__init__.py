"""Python API and CLI for Coway IoCare air purifiers."""

from iocare.accessory import ACCESSORY_TYPES, Accessory
from iocare.auth import TokenPair, TokenStore
from iocare.client import Client, Gateway, VendorResponse
from iocare.errors import (
    AuthError,
    CommandRejected,
    IoCareError,
    ProtocolError,
    TransientNetworkError,
    VendorError,
)
from iocare.host import AccessoryHost, HostedAccessory, LocalHost
from iocare.models import AccessoryState, Command, Device
from iocare.platform import Platform, PlatformConfig, PollSchedule
from iocare.purifier import MarvelAirPurifier

__all__ = [
    "ACCESSORY_TYPES",
    "Accessory",
    "AccessoryHost",
    "AccessoryState",
    "AuthError",
    "Client",
    "Command",
    "CommandRejected",
    "Device",
    "Gateway",
    "HostedAccessory",
    "IoCareError",
    "LocalHost",
    "MarvelAirPurifier",
    "Platform",
    "PlatformConfig",
    "PollSchedule",
    "ProtocolError",
    "TokenPair",
    "TokenStore",
    "TransientNetworkError",
    "VendorError",
    "VendorResponse",
]
