"""IoCare cloud API client.

Provides programmatic access to IoCare purifiers through the vendor's
cloud HTTP API.  :class:`Gateway` sends every vendor request; the
:class:`Client` facade wraps sign-in, saved tokens and the account-level
operations::

    import asyncio
    from iocare import Client

    client = await Client.login("user@example.com", "password")
    devices = await client.list_devices()
    await client.refresh_connectivity(devices)

    await client.control(devices[0], [Command(Field.POWER, Power.ON)])
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal
from urllib.parse import urlencode

import aiohttp

from iocare._constants import (
    API_BASE,
    APP_HEADERS,
    CONFIG_DIR,
    CONTROL_DEVICE,
    GET_DEVICE_CONNECTIONS,
    GET_USER_DEVICES,
    HTTP_TIMEOUT,
    REFRESH_TOKEN,
    TOKEN_FILE,
    EndpointDescriptor,
)
from iocare.auth import TokenPair, TokenStore, sign_in
from iocare.errors import TransientNetworkError, VendorError
from iocare.models import Command, Device

_LOGGER = logging.getLogger(__name__)

Method = Literal["GET", "POST"]


@dataclass
class VendorResponse:
    """Result of one vendor call, successful or not.

    Non-2xx answers are captured here instead of being raised so callers
    can react to vendor-specific error payloads.
    """

    status: int
    body: Any = None
    error: VendorError | None = field(default=None)

    @classmethod
    def from_http(cls, status: int, body: Any) -> VendorResponse:
        error = None
        if not 200 <= status < 300:
            code = message = None
            if isinstance(body, dict):
                detail = body.get("error")
                if isinstance(detail, dict):
                    code, message = detail.get("code"), detail.get("message")
                else:
                    code = body.get("code") or body.get("error")
                    message = body.get("message") or body.get("msg")
            error = VendorError(
                status,
                None if code is None else str(code),
                None if message is None else str(message),
            )
        return cls(status, body, error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def data(self) -> Any:
        """The ``data`` member of a successful JSON body, else ``None``."""
        if not self.ok or not isinstance(self.body, dict):
            return None
        return self.body.get("data")


class Gateway:
    """Builds, authenticates and sends IoCare API requests.

    Before every call except the refresh call itself the token store is
    asked to refresh an expired access token.  If that refresh fails, the
    failed refresh response is returned and the original request is not
    sent.
    """

    def __init__(
        self, tokens: TokenStore | None = None, *, session: aiohttp.ClientSession | None = None
    ) -> None:
        self.tokens = tokens if tokens is not None else TokenStore()
        self._session = session

    async def call(
        self,
        endpoint: EndpointDescriptor,
        method: Method = "GET",
        body: dict[str, Any] | None = None,
    ) -> VendorResponse:
        """Send one request to *endpoint* and return the captured response.

        GET bodies become the query string, POST bodies are sent as JSON.

        Raises :class:`TransientNetworkError` on connection failures.
        """
        if endpoint != REFRESH_TOKEN:
            failed = await self.tokens.ensure_fresh(self)
            if failed is not None:
                return failed

        url = API_BASE + endpoint.path
        body = body or {}
        headers = {**APP_HEADERS, "trcode": endpoint.transaction_code}
        pair = self.tokens.get()
        if pair is not None and pair.access_token:
            headers["Authorization"] = f"Bearer {pair.access_token}"

        if method == "GET":
            if body:
                url += "?" + urlencode(body)
            _LOGGER.debug("[GET REQ] %s (%s)", url, endpoint.transaction_code)
        else:
            _LOGGER.debug(
                "[POST REQ] %s (%s) :: %s", url, endpoint.transaction_code, json.dumps(body)
            )

        timeout = aiohttp.ClientTimeout(total=HTTP_TIMEOUT)
        try:
            async with self._http() as http:
                if method == "GET":
                    request = http.get(url, headers=headers, timeout=timeout)
                else:
                    request = http.post(url, json=body, headers=headers, timeout=timeout)
                async with request as resp:
                    status = resp.status
                    try:
                        payload = await resp.json(content_type=None)
                    except ValueError:
                        payload = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"{method} {endpoint.path} failed: {e}") from e

        response = VendorResponse.from_http(status, payload)
        _LOGGER.debug("[RESP] %s %d :: %s", endpoint.path, status, json.dumps(payload))
        if response.error is not None:
            _LOGGER.debug("Vendor error on %s: %s", endpoint.path, response.error)
        return response

    @contextlib.asynccontextmanager
    async def _http(self) -> AsyncIterator[aiohttp.ClientSession]:
        if self._session is not None:
            yield self._session
        else:
            async with aiohttp.ClientSession() as session:
                yield session


class Client:
    """IoCare account client.

    Use :meth:`login` to authenticate, or :meth:`from_saved` to load a
    previously saved token pair.  The password is never stored.
    """

    def __init__(
        self,
        tokens: TokenPair | TokenStore | None = None,
        *,
        auto_save: bool = False,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        if isinstance(tokens, TokenStore):
            self.tokens = tokens
        else:
            self.tokens = TokenStore(
                tokens, on_refresh=self._on_refresh if auto_save else None
            )
        self.gateway = Gateway(self.tokens, session=session)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    async def login(cls, username: str, password: str) -> Client:
        """Sign in with IoCare credentials and return a new client.

        Tokens are **not** saved automatically; call :meth:`save_tokens`
        to persist them.

        Raises :class:`~iocare.errors.AuthError` or
        :class:`~iocare.errors.ProtocolError` when sign-in fails.
        """
        code = await sign_in(username, password)
        client = cls()
        await client.tokens.exchange(client.gateway, code)
        return client

    @classmethod
    def from_saved(cls) -> Client:
        """Load a client from a previously saved token pair.

        Raises :class:`FileNotFoundError` if no token file exists.
        """
        if not TOKEN_FILE.exists():
            raise FileNotFoundError(
                f"No saved tokens at {TOKEN_FILE}. Call Client.login() first."
            )
        pair = TokenPair.from_dict(json.loads(TOKEN_FILE.read_text()))
        return cls(pair, auto_save=True)

    def save_tokens(self) -> None:
        """Persist the token pair to ``~/.config/iocare/tokens.json``."""
        pair = self.tokens.get()
        if pair is None:
            raise ValueError("No tokens to save. Call Client.login() first.")
        _write_tokens(pair)

    def _on_refresh(self, pair: TokenPair) -> None:
        # Persist immediately so the next process reuses the refreshed pair.
        _write_tokens(pair)

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def list_devices(self) -> list[Device] | None:
        """Fetch the account's devices (first page of 100 only).

        Returns ``None`` when the vendor answers without a device list.
        """
        response = await self.gateway.call(
            GET_USER_DEVICES, "GET", {"pageIndex": "0", "pageSize": "100"}
        )
        data = response.data
        if not isinstance(data, dict) or not isinstance(data.get("deviceInfos"), list):
            _LOGGER.error("IoCare service is offline or no deviceInfos found in response")
            return None
        return [Device.from_api(info) for info in data["deviceInfos"] if isinstance(info, dict)]

    async def refresh_connectivity(self, devices: Sequence[Device]) -> None:
        """Update ``net_status`` on *devices* with one batched connection query."""
        if not devices:
            return
        response = await self.gateway.call(
            GET_DEVICE_CONNECTIONS, "GET", {"devIds": ",".join(d.barcode for d in devices)}
        )
        if not isinstance(response.data, list):
            _LOGGER.warning("GET_DEVICE_CONNECTIONS returned no data or failed")
            return
        for info in response.data:
            if not isinstance(info, dict):
                continue
            for device in devices:
                if device.barcode == info.get("devId"):
                    device.net_status = info.get("netStatus")

    async def control(self, device: Device, commands: Sequence[Command]) -> VendorResponse:
        """Send a batch of control commands to *device*."""
        return await self.gateway.call(
            CONTROL_DEVICE,
            "POST",
            {
                "devId": device.barcode,
                "funcList": [c.to_api() for c in commands],
                "dvcTypeCd": device.device_type,
                "isMultiControl": False,
            },
        )


def _write_tokens(pair: TokenPair) -> None:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    TOKEN_FILE.write_text(json.dumps(pair.to_dict(), indent=2))
    TOKEN_FILE.chmod(0o600)
