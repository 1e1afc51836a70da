"""Tests for iocare.auth."""

from __future__ import annotations

import base64
import json
import re
import time

import aiohttp
import pytest
from aioresponses import aioresponses

from iocare._constants import API_BASE, AUTHENTICATE_URL, GET_USER_DEVICES, REDIRECT_URL, SIGN_IN_URL
from iocare.auth import (
    TokenPair,
    TokenStore,
    decode_jwt_exp,
    is_password_change_page,
    login_form,
    parse_authorization_code,
    parse_session_code,
    parse_set_cookies,
    sign_in,
)
from iocare.client import Gateway
from iocare.errors import AuthError, ProtocolError, TransientNetworkError

_SIGN_IN_URL = re.compile(rf"^{re.escape(SIGN_IN_URL)}")
_AUTHENTICATE_URL = re.compile(rf"^{re.escape(AUTHENTICATE_URL)}")
_REFRESH_URL = re.compile(rf"^{re.escape(API_BASE)}/com/refresh-token")
_DEVICES_URL = re.compile(rf"^{re.escape(API_BASE)}/com/user-devices")
_TOKEN_URL = re.compile(rf"^{re.escape(API_BASE)}/com/token")


def make_jwt(exp: int) -> str:
    """Build a minimal unsigned JWT with the given exp claim (for testing only)."""
    header = base64.urlsafe_b64encode(b'{"alg":"none"}').rstrip(b"=").decode()
    payload_bytes = json.dumps({"exp": exp, "sub": "test"}).encode()
    payload = base64.urlsafe_b64encode(payload_bytes).rstrip(b"=").decode()
    return f"{header}.{payload}.fakesig"


def _form_page(session_code: str) -> str:
    return (
        '<form id="kc-form-login" method="post" '
        f'action="{AUTHENTICATE_URL}?session_code={session_code}&amp;execution=e1&amp;tab_id=t1">'
        "</form>"
    )


def _password_change_page(session_code: str) -> str:
    return _form_page(session_code).replace(
        "</form>",
        '<input type="password" name="current_password">'
        '<input type="password" name="new_password"></form>',
    )


def _calls(m: aioresponses, path: str) -> list:
    return [c for (_, url), calls in m.requests.items() if url.path.endswith(path) for c in calls]


_TERMINAL = {"Location": f"{REDIRECT_URL}?state=s&code=AUTH-CODE-1"}


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


class TestParseSessionCode:
    def test_extracts_and_unescapes(self):
        assert parse_session_code(_form_page("abc")) == "abc&execution=e1&tab_id=t1"

    def test_missing_form_raises(self):
        with pytest.raises(ProtocolError):
            parse_session_code("<html><body>Maintenance</body></html>")


class TestParseSetCookies:
    def test_keeps_name_value_pairs_only(self):
        headers = ["AUTH_SESSION_ID=one; Path=/; Secure", "KC_RESTART=two; HttpOnly"]
        assert parse_set_cookies(headers) == "AUTH_SESSION_ID=one; KC_RESTART=two"

    def test_empty(self):
        assert parse_set_cookies([]) == ""


class TestIsPasswordChangePage:
    def test_detects_interstitial(self):
        assert is_password_change_page(_password_change_page("s1"))

    def test_login_form_is_not_interstitial(self):
        assert not is_password_change_page(_form_page("s1"))


class TestParseAuthorizationCode:
    def test_reads_code(self):
        assert parse_authorization_code(_TERMINAL["Location"]) == "AUTH-CODE-1"

    def test_missing_code_raises(self):
        with pytest.raises(AuthError):
            parse_authorization_code(f"{REDIRECT_URL}?error=access_denied")


class TestLoginForm:
    def test_fixed_fields(self):
        form = login_form("me@example.com", "secret")
        assert form["username"] == "me@example.com"
        assert form["password"] == "secret"
        assert form["clientName"] == "IOCARE"
        assert form["rememberMe"] == "on"


# ---------------------------------------------------------------------------
# Sign-in handshake
# ---------------------------------------------------------------------------


class TestSignIn:
    async def test_direct_redirect(self):
        with aioresponses() as m:
            m.get(_SIGN_IN_URL, body=_form_page("s1"), headers={"Set-Cookie": "AUTH=1; Path=/"})
            m.post(_AUTHENTICATE_URL, status=302, headers=_TERMINAL)
            code = await sign_in("me@example.com", "secret")

        assert code == "AUTH-CODE-1"
        (post,) = _calls(m, "/login-actions/authenticate")
        assert post.kwargs["data"]["username"] == "me@example.com"
        assert post.kwargs["headers"]["Cookie"] == "AUTH=1"
        assert post.kwargs["allow_redirects"] is False

    async def test_one_password_change_page_is_skipped(self):
        with aioresponses() as m:
            m.get(_SIGN_IN_URL, body=_form_page("s1"))
            m.post(_AUTHENTICATE_URL, body=_password_change_page("s2"))
            m.post(_AUTHENTICATE_URL, status=302, headers=_TERMINAL)
            code = await sign_in("me@example.com", "secret")

        assert code == "AUTH-CODE-1"
        first, second = _calls(m, "/login-actions/authenticate")
        assert second.kwargs["data"]["cmd"] == "change_next_time"
        assert "username" not in second.kwargs["data"]

    async def test_three_password_change_pages_raise(self):
        with aioresponses() as m:
            m.get(_SIGN_IN_URL, body=_form_page("s1"))
            m.post(_AUTHENTICATE_URL, body=_password_change_page("s2"))
            m.post(_AUTHENTICATE_URL, body=_password_change_page("s3"))
            m.post(_AUTHENTICATE_URL, body=_password_change_page("s4"))
            with pytest.raises(ProtocolError):
                await sign_in("me@example.com", "secret")

    async def test_intermediate_redirect_is_followed(self):
        hop = "https://id.coway.com/auth/realms/cw-account/login-actions/required-action"
        with aioresponses() as m:
            m.get(_SIGN_IN_URL, body=_form_page("s1"))
            m.post(_AUTHENTICATE_URL, status=302, headers={"Location": hop})
            m.get(hop, status=302, headers=_TERMINAL)
            code = await sign_in("me@example.com", "secret")

        assert code == "AUTH-CODE-1"

    async def test_rejected_credentials(self):
        with aioresponses() as m:
            m.get(_SIGN_IN_URL, body=_form_page("s1"))
            m.post(_AUTHENTICATE_URL, status=401, body="Invalid username or password")
            with pytest.raises(AuthError):
                await sign_in("me@example.com", "wrong")

    async def test_login_form_shown_again(self):
        with aioresponses() as m:
            m.get(_SIGN_IN_URL, body=_form_page("s1"))
            m.post(_AUTHENTICATE_URL, body=_form_page("s2"))
            with pytest.raises(AuthError):
                await sign_in("me@example.com", "wrong")

        assert len(_calls(m, "/login-actions/authenticate")) == 1

    async def test_sign_in_page_changed(self):
        with aioresponses() as m:
            m.get(_SIGN_IN_URL, body="<html>new login experience</html>")
            with pytest.raises(ProtocolError):
                await sign_in("me@example.com", "secret")

    async def test_connection_failure(self):
        with aioresponses() as m:
            m.get(_SIGN_IN_URL, exception=aiohttp.ClientConnectionError("reset"))
            with pytest.raises(TransientNetworkError):
                await sign_in("me@example.com", "secret")


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TestDecodeJwtExp:
    def test_extracts_exp(self):
        future = int(time.time()) + 86400
        assert decode_jwt_exp(make_jwt(future)) == float(future)

    def test_not_a_jwt(self):
        assert decode_jwt_exp("not-a-jwt") is None

    def test_malformed_payload(self):
        assert decode_jwt_exp("a.!!!.c") is None

    def test_missing_exp_claim(self):
        payload = base64.urlsafe_b64encode(b'{"sub":"test"}').rstrip(b"=").decode()
        assert decode_jwt_exp(f"hdr.{payload}.sig") is None


class TestTokenStoreExpiry:
    def test_one_second_past(self):
        store = TokenStore(TokenPair(make_jwt(1000), "r"), clock=lambda: 1001.0)
        assert store.is_expired()

    def test_one_hour_ahead(self):
        store = TokenStore(TokenPair(make_jwt(1000 + 3600), "r"), clock=lambda: 1000.0)
        assert not store.is_expired()

    def test_unreadable_token_counts_as_expired(self):
        assert TokenStore(TokenPair("opaque", "r")).is_expired()

    def test_empty_store_is_not_expired(self):
        assert not TokenStore().is_expired()


class TestTokenRefresh:
    async def test_expired_token_refreshes_exactly_once(self):
        now = int(time.time())
        fresh = make_jwt(now + 3600)
        store = TokenStore(TokenPair(make_jwt(now - 1), "refresh-1"))
        with aioresponses() as m:
            m.post(_REFRESH_URL, payload={"data": {"accessToken": fresh, "refreshToken": "refresh-2"}})
            m.get(_DEVICES_URL, payload={"data": {"deviceInfos": []}})
            response = await Gateway(store).call(GET_USER_DEVICES, "GET", {"pageIndex": "0"})

        assert response.ok
        (refresh,) = _calls(m, "/com/refresh-token")
        assert refresh.kwargs["json"] == {"refreshToken": "refresh-1"}
        (devices,) = _calls(m, "/com/user-devices")
        assert devices.kwargs["headers"]["Authorization"] == f"Bearer {fresh}"
        assert store.get() == TokenPair(fresh, "refresh-2")

    async def test_valid_token_does_not_refresh(self):
        store = TokenStore(TokenPair(make_jwt(int(time.time()) + 3600), "refresh-1"))
        with aioresponses() as m:
            m.get(_DEVICES_URL, payload={"data": {"deviceInfos": []}})
            await Gateway(store).call(GET_USER_DEVICES)

        assert _calls(m, "/com/refresh-token") == []

    async def test_failed_refresh_returns_refresh_response(self):
        stale = TokenPair(make_jwt(int(time.time()) - 60), "refresh-1")
        store = TokenStore(stale)
        with aioresponses() as m:
            m.post(_REFRESH_URL, status=401, payload={"error": {"code": "T001", "message": "expired"}})
            response = await Gateway(store).call(GET_USER_DEVICES)

        assert not response.ok
        assert response.error.status == 401
        assert response.error.code == "T001"
        assert _calls(m, "/com/user-devices") == []
        assert store.get() == stale

    async def test_refresh_without_tokens_is_a_failure(self):
        stale = TokenPair(make_jwt(int(time.time()) - 60), "refresh-1")
        store = TokenStore(stale)
        with aioresponses() as m:
            m.post(_REFRESH_URL, payload={"data": {}})
            response = await Gateway(store).call(GET_USER_DEVICES)

        assert not response.ok
        assert store.get() == stale

    async def test_refresh_notifies_listener(self):
        saved = []
        now = int(time.time())
        store = TokenStore(TokenPair(make_jwt(now - 1), "r1"), on_refresh=saved.append)
        with aioresponses() as m:
            m.post(_REFRESH_URL, payload={"data": {"accessToken": make_jwt(now + 60), "refreshToken": "r2"}})
            m.get(_DEVICES_URL, payload={"data": {}})
            await Gateway(store).call(GET_USER_DEVICES)

        assert [p.refresh_token for p in saved] == ["r2"]


class TestTokenExchange:
    async def test_exchange_stores_pair(self):
        store = TokenStore()
        with aioresponses() as m:
            m.post(_TOKEN_URL, payload={"data": {"accessToken": "a1", "refreshToken": "r1"}})
            pair = await store.exchange(Gateway(store), "AUTH-CODE-1")

        assert pair == TokenPair("a1", "r1")
        assert store.get() == pair
        (call,) = _calls(m, "/com/token")
        assert call.kwargs["json"] == {"authCode": "AUTH-CODE-1", "redirectUrl": REDIRECT_URL}
        assert call.kwargs["headers"]["trcode"] == "CWIL0100"

    async def test_exchange_without_tokens_raises(self):
        store = TokenStore()
        with aioresponses() as m:
            m.post(_TOKEN_URL, status=400, payload={"code": "E400", "message": "bad code"})
            with pytest.raises(AuthError):
                await store.exchange(Gateway(store), "AUTH-CODE-1")
