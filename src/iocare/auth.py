"""Sign-in handshake and token lifecycle for the IoCare cloud.

The vendor only offers a browser-oriented OpenID Connect login.  The
handshake here drives it programmatically:

1. :func:`negotiate_session` GETs the sign-in page and scrapes the
   ``session_code`` out of the login form's ``action`` attribute.
2. :func:`negotiate_authorization_code` POSTs the login form and walks the
   redirect chain until it reaches ``redirect_bridge.html?code=...``,
   skipping the "change your password" interstitial when it appears.
3. :meth:`TokenStore.exchange` trades the authorization code for a
   :class:`TokenPair`, which :meth:`TokenStore.ensure_fresh` keeps valid.
"""

from __future__ import annotations

import asyncio
import base64
import dataclasses
import html
import json
import logging
import re
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlsplit

import aiohttp

from iocare._constants import (
    AUTHENTICATE_URL,
    CLIENT_ID,
    GET_ACCESS_TOKEN,
    HTTP_TIMEOUT,
    MAX_LOGIN_REDIRECT_HOPS,
    REDIRECT_MARKER,
    REDIRECT_URL,
    REFRESH_TOKEN,
    SIGN_IN_URL,
    USER_AGENT,
)
from iocare.errors import AuthError, ProtocolError, TransientNetworkError, VendorError

if TYPE_CHECKING:
    from iocare.client import Gateway, VendorResponse

_LOGGER = logging.getLogger(__name__)

_SESSION_CODE_RE = re.compile(r'action="(https://[^"]*?)\?session_code=([^"]*)"')
_PASSWORD_CHANGE_RE = re.compile(r'name="(?:current_password|new_password)"')
_REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
_MAX_FOLLOWED_REDIRECTS = 5


@dataclass
class Session:
    """Short-lived login session scraped from the sign-in page."""

    session_code: str
    cookies: str


@dataclass
class TokenPair:
    """Access/refresh token pair issued by the IoCare API."""

    access_token: str
    refresh_token: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> TokenPair:
        return cls(str(data.get("access_token", "")), str(data.get("refresh_token", "")))


def login_form(username: str, password: str) -> dict[str, str]:
    """Build the urlencoded login form the vendor's web page would submit."""
    return {
        "clientName": "IOCARE",
        "uiLocales": "en-US",
        "isAosApp": "true",
        "isIosApp": "false",
        "termAgreementStatus": "",
        "idp": "",
        "username": username,
        "password": password,
        "rememberMe": "on",
    }


SKIP_PASSWORD_CHANGE_FORM: dict[str, str] = {
    "cmd": "change_next_time",
    "checkPasswordNeededYn": "Y",
    "current_password": "",
    "new_password": "",
    "new_password_confirm": "",
}


# ---------------------------------------------------------------------------
# Session negotiation
# ---------------------------------------------------------------------------


def parse_session_code(page: str) -> str:
    """Extract the ``session_code`` value from a login form ``action`` attribute.

    Raises :class:`ProtocolError` if the page has no such form.
    """
    match = _SESSION_CODE_RE.search(page)
    if match is None:
        raise ProtocolError("Sign-in page has no session_code form action")
    return html.unescape(match.group(2))


def parse_set_cookies(headers: list[str]) -> str:
    """Collapse ``Set-Cookie`` header values into a single ``Cookie`` header."""
    pairs = [h.split(";", 1)[0].strip() for h in headers]
    return "; ".join(p for p in pairs if p)


def parse_authorization_code(location: str) -> str:
    """Read the ``code`` query parameter from the terminal redirect URL."""
    code = parse_qs(urlsplit(location).query).get("code")
    if not code or not code[0]:
        raise AuthError(f"Sign-in redirect carried no authorization code: {location}")
    return code[0]


def is_password_change_page(page: str) -> bool:
    """True when *page* is the "change your password" interstitial."""
    return _PASSWORD_CHANGE_RE.search(page) is not None


async def negotiate_session(http: aiohttp.ClientSession) -> Session:
    """Open a login session on the vendor's sign-in page."""
    params = {
        "auth_type": "0",
        "response_type": "code",
        "client_id": CLIENT_ID,
        "ui_locales": "en-US",
        "dvc_cntry_id": "US",
        "redirect_uri": REDIRECT_URL,
    }
    _LOGGER.debug("[GET REQ] %s", SIGN_IN_URL)
    try:
        async with http.get(
            SIGN_IN_URL,
            params=params,
            headers={"User-Agent": USER_AGENT},
            timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT),
        ) as resp:
            page = await resp.text()
            cookies = parse_set_cookies(resp.headers.getall("Set-Cookie", []))
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TransientNetworkError(str(e)) from e
    return Session(parse_session_code(page), cookies)


async def negotiate_authorization_code(
    http: aiohttp.ClientSession,
    form: dict[str, str],
    session: Session,
    *,
    max_hops: int = MAX_LOGIN_REDIRECT_HOPS,
) -> str:
    """Submit *form* and follow the flow until an authorization code is issued.

    When the vendor answers with the "force password change" page instead of
    the terminal redirect, the skip form is submitted with a fresh session
    code.  At most *max_hops* such skips are made; one more interstitial
    raises :class:`ProtocolError`.  Any other page (typically the login form
    re-rendered with an error) raises :class:`AuthError`.
    """
    for hop in range(max_hops + 1):
        status, location, page = await _submit_form(http, form, session)
        if location is not None and REDIRECT_MARKER in location:
            return parse_authorization_code(location)
        if not 200 <= status < 300:
            raise AuthError(f"Sign-in rejected with HTTP {status}")
        if not is_password_change_page(page):
            raise AuthError("Sign-in rejected: the login form was shown again")
        if hop == max_hops:
            raise ProtocolError(
                f"Sign-in did not reach {REDIRECT_MARKER} after {max_hops} password-change skips"
            )
        _LOGGER.debug("Password change requested, skipping (hop %d)", hop + 1)
        session = Session(parse_session_code(page), session.cookies)
        form = SKIP_PASSWORD_CHANGE_FORM
    raise AssertionError("unreachable")


async def _submit_form(
    http: aiohttp.ClientSession, form: dict[str, str], session: Session
) -> tuple[int, str | None, str]:
    """POST *form* and follow non-terminal redirects by hand.

    Returns ``(status, terminal_location, body)``; *terminal_location* is set
    only when a redirect points at the redirect bridge.
    """
    url = f"{AUTHENTICATE_URL}?session_code={session.session_code}"
    headers = {
        "User-Agent": USER_AGENT,
        "Content-Type": "application/x-www-form-urlencoded",
        "Cookie": session.cookies,
    }
    timeout = aiohttp.ClientTimeout(total=HTTP_TIMEOUT)
    _LOGGER.debug("[POST REQ] %s", AUTHENTICATE_URL)
    try:
        async with http.post(
            url, data=form, headers=headers, allow_redirects=False, timeout=timeout
        ) as resp:
            status = resp.status
            location = resp.headers.get("Location")
            page = await resp.text()

        for _ in range(_MAX_FOLLOWED_REDIRECTS):
            if status not in _REDIRECT_STATUSES or not location:
                break
            if REDIRECT_MARKER in location:
                return status, location, page
            _LOGGER.debug("[GET REQ] %s", location)
            async with http.get(
                location,
                headers={"User-Agent": USER_AGENT, "Cookie": session.cookies},
                allow_redirects=False,
                timeout=timeout,
            ) as resp:
                status = resp.status
                location = resp.headers.get("Location")
                page = await resp.text()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise TransientNetworkError(str(e)) from e

    if status in _REDIRECT_STATUSES and location and REDIRECT_MARKER in location:
        return status, location, page
    return status, None, page


async def sign_in(username: str, password: str) -> str:
    """Run the full browser handshake and return an authorization code."""
    # The Cookie header is managed by hand, so the session must not keep a jar.
    async with aiohttp.ClientSession(cookie_jar=aiohttp.DummyCookieJar()) as http:
        session = await negotiate_session(http)
        return await negotiate_authorization_code(http, login_form(username, password), session)


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def decode_jwt_exp(token: str) -> float | None:
    """Extract the ``exp`` claim from a JWT without verifying the signature.

    Returns the expiry as a Unix timestamp (float), or ``None`` if the token
    cannot be decoded (e.g. not a JWT, malformed base64, missing claim).
    """
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return None
        # base64url padding: length must be a multiple of 4
        padded = parts[1] + "=" * (-len(parts[1]) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded))
        return float(payload["exp"])
    except (ValueError, KeyError, TypeError):
        return None


class TokenStore:
    """Single owner of the account's :class:`TokenPair`.

    The gateway consults :meth:`ensure_fresh` before every authenticated
    call.  Concurrent callers that all see an expired token may each trigger
    a refresh; the vendor tolerates this.
    """

    def __init__(
        self,
        pair: TokenPair | None = None,
        *,
        clock: Callable[[], float] = time.time,
        on_refresh: Callable[[TokenPair], None] | None = None,
    ) -> None:
        self._pair = pair
        self._clock = clock
        self._on_refresh = on_refresh

    def get(self) -> TokenPair | None:
        """Current token pair, or ``None`` before sign-in."""
        return self._pair

    def replace(self, pair: TokenPair) -> None:
        self._pair = pair
        if self._on_refresh is not None:
            self._on_refresh(pair)

    def is_expired(self) -> bool:
        """True when the access token's ``exp`` claim is in the past.

        A token whose expiry cannot be read counts as expired.  An empty
        store is never expired: there is nothing to refresh.
        """
        if self._pair is None or not self._pair.access_token:
            return False
        exp = decode_jwt_exp(self._pair.access_token)
        return exp is None or exp < self._clock()

    async def exchange(self, gateway: Gateway, code: str) -> TokenPair:
        """Trade an authorization code for a token pair and store it."""
        response = await gateway.call(
            GET_ACCESS_TOKEN, "POST", {"authCode": code, "redirectUrl": REDIRECT_URL}
        )
        pair = _pair_from_response(response)
        if pair is None:
            raise AuthError(f"Token exchange failed: {response.error or response.body}")
        self.replace(pair)
        return pair

    async def ensure_fresh(self, gateway: Gateway) -> VendorResponse | None:
        """Refresh the pair if expired.

        Returns the failed refresh response when refreshing did not work,
        otherwise ``None``.
        """
        if not self.is_expired():
            return None
        response = await self.refresh(gateway)
        return None if response.ok else response

    async def refresh(self, gateway: Gateway) -> VendorResponse:
        """Call the refresh endpoint and replace both tokens on success.

        On failure the stale pair is kept.
        """
        assert self._pair is not None
        _LOGGER.debug("Access token expired, refreshing")
        response = await gateway.call(
            REFRESH_TOKEN, "POST", {"refreshToken": self._pair.refresh_token}
        )
        pair = _pair_from_response(response) if response.ok else None
        if pair is None:
            _LOGGER.warning("Token refresh failed: %s", response.error or response.body)
            if response.ok:
                return dataclasses.replace(
                    response,
                    error=VendorError(response.status, message="Refresh response carried no tokens"),
                )
            return response
        self.replace(pair)
        return response


def _pair_from_response(response: VendorResponse) -> TokenPair | None:
    data = response.data
    if not isinstance(data, dict):
        return None
    access = data.get("accessToken")
    refresh = data.get("refreshToken")
    if not access or not refresh:
        return None
    return TokenPair(str(access), str(refresh))
