"""Exception hierarchy shared by the IoCare client and platform."""

from __future__ import annotations


class IoCareError(Exception):
    """Base class for every error raised by :mod:`iocare`."""


class ProtocolError(IoCareError):
    """The vendor's login HTML or redirect chain no longer has the expected shape.

    Fatal to the current sign-in attempt; never retried automatically.
    """


class AuthError(IoCareError):
    """Bad credentials or a terminal rejection from the vendor sign-in flow."""


class TransientNetworkError(IoCareError, ConnectionError):
    """Connection-level failure talking to the vendor.

    Wraps :class:`aiohttp.ClientError` and timeouts so callers do not need
    to import ``aiohttp`` to catch them.
    """


class CommandRejected(IoCareError, ValueError):
    """A command was refused locally; no vendor call was made."""


class VendorError(IoCareError):
    """A non-2xx vendor API response.

    The gateway never raises this: it is attached to the failed
    :class:`~iocare.client.VendorResponse` so callers can branch on
    vendor-specific codes.
    """

    def __init__(self, status: int, code: str | None = None, message: str | None = None) -> None:
        self.status = status
        self.code = code
        self.message = message
        detail = message or "unknown vendor error"
        if code:
            detail = f"{code}: {detail}"
        super().__init__(f"Vendor request failed ({status}) {detail}")
