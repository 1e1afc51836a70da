"""Internal constants for the IoCare cloud API and local state."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

API_BASE = "https://iocare.iotsvc.coway.com/api/v1"

SIGN_IN_URL = "https://id.coway.com/auth/realms/cw-account/protocol/openid-connect/auth"
AUTHENTICATE_URL = "https://id.coway.com/auth/realms/cw-account/login-actions/authenticate"
REDIRECT_URL = "https://iocare-redirect.iot.coway.com/redirect_bridge.html"
REDIRECT_MARKER = "redirect_bridge.html"

CLIENT_ID = "cwid-prd-iocare-20240327"
USER_AGENT = (
    "Mozilla/5.0 (Linux; Android 10; SM-G975F) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.6167.101 Mobile Safari/537.36"
)

HTTP_TIMEOUT = 15  # seconds per request
DEFAULT_POLL_INTERVAL = 120  # seconds between poll cycles

# Maximum "skip password change" submissions per sign-in before giving up.
MAX_LOGIN_REDIRECT_HOPS = 2

CONFIG_DIR = Path.home() / ".config" / "iocare"
TOKEN_FILE = CONFIG_DIR / "tokens.json"
ACCESSORY_CACHE_FILE = CONFIG_DIR / "accessories.json"

APP_HEADERS: dict[str, str] = {
    "User-Agent": USER_AGENT,
    "Content-Type": "application/json",
    "profile": "prod",
}


@dataclass(frozen=True)
class EndpointDescriptor:
    """A vendor route paired with the transaction code it requires."""

    path: str
    """Path below :data:`API_BASE`; may contain a ``{barcode}`` placeholder."""

    transaction_code: str
    """Value of the ``trcode`` header."""

    def for_device(self, barcode: str) -> EndpointDescriptor:
        """Return a copy with the ``{barcode}`` placeholder filled in."""
        return EndpointDescriptor(self.path.format(barcode=barcode), self.transaction_code)


GET_ACCESS_TOKEN = EndpointDescriptor("/com/token", "CWIL0100")
REFRESH_TOKEN = EndpointDescriptor("/com/refresh-token", "CWIL0300")
GET_USER_DEVICES = EndpointDescriptor("/com/user-devices", "CWIG0304")
GET_DEVICE_CONNECTIONS = EndpointDescriptor("/com/devices-conn", "CWIG0607")
CONTROL_DEVICE = EndpointDescriptor("/com/control-device", "CWIG0603")

DEVICES_CONTROL = EndpointDescriptor("/devices/{barcode}/control", "CWIG0602")
AIR_DEVICES_HOME = EndpointDescriptor("/air/devices/{barcode}/home", "CWIA0120")
AIR_DEVICES_FILTER_INFO = EndpointDescriptor("/air/devices/{barcode}/filter-info", "CWIA0800")
