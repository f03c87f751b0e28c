"""
tests/test_extension.py -- Shared-key gate for the browser extension routes.

The key gate runs before the session gate, so a request without the key is
refused with 403 whether or not it carries a token.
"""

from __future__ import annotations

import pytest

from auth.errors import ExternalClientKeyInvalid, ExternalClientKeyMissing
from auth.extension import EXTENSION_KEY_HEADER, check_extension_key, constant_time_equals
from core.config import get_settings
from tests.conftest import ADMIN_EMAIL

KEY = "k" * 32
SESSION = "/api/v1/extension/session"
CONFIG = "/api/v1/extension/config"


class TestConstantTimeEquals:
    @pytest.mark.parametrize(
        "provided, expected, result",
        [
            ("abc", "abc", True),
            ("abc", "abd", False),
            ("abc", "abcd", False),
            ("", "", True),
            ("xbc", "abc", False),
        ],
    )
    def test_compare(self, provided, expected, result):
        assert constant_time_equals(provided, expected) is result


class TestCheckExtensionKey:
    def test_unconfigured_allows_with_warning(self, caplog):
        check_extension_key(None, "")
        assert "not configured" in caplog.text

    def test_missing(self):
        with pytest.raises(ExternalClientKeyMissing):
            check_extension_key(None, KEY)

    def test_wrong(self, caplog):
        with pytest.raises(ExternalClientKeyInvalid):
            check_extension_key("x" * 32, KEY, origin="chrome-extension://evil")
        assert "chrome-extension://evil" in caplog.text

    def test_match(self):
        check_extension_key(KEY, KEY)


@pytest.fixture
def keyed(monkeypatch):
    monkeypatch.setattr(get_settings(), "extension_api_key", KEY)


class TestExtensionRoutes:
    def test_unconfigured_key_only_needs_a_session(self, api, monkeypatch):
        monkeypatch.setattr(get_settings(), "extension_api_key", "")
        resp = api.client.get(SESSION, headers=api.admin_headers())
        assert resp.status_code == 200

    def test_missing_key_is_403_even_without_token(self, api, keyed):
        resp = api.client.get(SESSION)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "extension_key_required"

    def test_wrong_key_is_403(self, api, keyed):
        headers = {**api.admin_headers(), EXTENSION_KEY_HEADER: "wrong"}
        resp = api.client.get(SESSION, headers=headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "extension_key_invalid"

    def test_key_without_token_is_401(self, api, keyed):
        resp = api.client.get(SESSION, headers={EXTENSION_KEY_HEADER: KEY})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "missing_token"

    def test_session(self, api, keyed):
        body = api.login(ADMIN_EMAIL, "AdminPass123")
        headers = {"Authorization": f"Bearer {body['token']}", EXTENSION_KEY_HEADER: KEY}
        resp = api.client.get(SESSION, headers=headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["user"]["email"] == ADMIN_EMAIL
        assert data["session_id"] == body["session_id"]
        assert data["expires_at"]

    def test_config(self, api, keyed):
        api.state.policy.update(session_inactivity_minutes=15)
        headers = {**api.admin_headers(), EXTENSION_KEY_HEADER: KEY}
        resp = api.client.get(CONFIG, headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"session_inactivity_minutes": 15, "session_lifetime_minutes": 480}
