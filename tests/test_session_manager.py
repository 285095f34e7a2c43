"""
Tests for the session manager: startup validation, token refresh,
prefix handling, logout, and the authenticated-iff-token-and-cookies rule.
"""

import asyncio

import pytest
import requests

from difychat.auth import InstanceType, SessionManager, StorageKeys
from difychat.errors import StoreError


def run(coro):
    return asyncio.run(coro)


# ====================================================================
# initialize()
# ====================================================================

class TestInitialize:

    def test_empty_store_returns_false(self, session):
        assert run(session.initialize()) is False
        assert session.is_authenticated is False
        assert session.instance_type is InstanceType.CLOUD
        assert session.instance_url == "https://cloud.dify.ai"

    def test_unreadable_store_returns_false(self, session, store):
        store.fail_reads = True
        assert run(session.initialize()) is False

    def test_valid_token_and_cookies_authenticated(self, session, store, make_token, fake_http):
        store._data.update({
            StorageKeys.AUTH_TOKEN: make_token(3600),
            StorageKeys.COOKIES: "sid=1",
        })
        assert run(session.initialize()) is True
        assert fake_http.calls == []

    def test_valid_token_without_cookies_not_authenticated(self, session, store, make_token):
        store._data[StorageKeys.AUTH_TOKEN] = make_token(3600)
        assert run(session.initialize()) is False

    def test_cookies_without_token_not_authenticated(self, session, store):
        store._data[StorageKeys.COOKIES] = "sid=1"
        assert run(session.initialize()) is False

    def test_expired_token_refreshes_once(self, session, store, make_token, fake_http):
        new_token = make_token(3600)
        store._data.update({
            StorageKeys.AUTH_TOKEN: make_token(-60),
            StorageKeys.REFRESH_TOKEN: "refresh-1",
            StorageKeys.COOKIES: "sid=1",
        })
        fake_http.add("POST", "/oauth/token/refresh", 200,
                      {"access_token": new_token, "refresh_token": "refresh-2"})

        assert run(session.initialize()) is True
        calls = fake_http.calls_to("POST", "/oauth/token/refresh")
        assert len(calls) == 1
        assert calls[0][1] == "https://cloud.dify.ai/console/api/oauth/token/refresh"
        assert calls[0][2]["json"] == {"refresh_token": "refresh-1"}
        assert store._data[StorageKeys.AUTH_TOKEN] == new_token
        assert store._data[StorageKeys.REFRESH_TOKEN] == "refresh-2"

    def test_refreshed_token_still_needs_cookies(self, session, store, make_token, fake_http):
        store._data.update({
            StorageKeys.AUTH_TOKEN: make_token(-60),
            StorageKeys.REFRESH_TOKEN: "refresh-1",
        })
        fake_http.add("POST", "/oauth/token/refresh", 200,
                      {"access_token": make_token(3600), "refresh_token": "r2"})
        assert run(session.initialize()) is False

    def test_expired_token_without_refresh_logs_out(self, session, store, make_token, fake_http):
        store._data.update({
            StorageKeys.AUTH_TOKEN: make_token(-60),
            StorageKeys.COOKIES: "sid=1",
            StorageKeys.API_PREFIX: "https://x/api",
        })
        assert run(session.initialize()) is False
        assert fake_http.calls == []
        assert StorageKeys.AUTH_TOKEN not in store._data
        assert StorageKeys.API_PREFIX not in store._data

    def test_undecodable_token_logs_out(self, session, store):
        store._data.update({
            StorageKeys.AUTH_TOKEN: "not-a-jwt",
            StorageKeys.COOKIES: "sid=1",
        })
        assert run(session.initialize()) is False
        assert StorageKeys.COOKIES not in store._data

    def test_token_without_exp_is_not_expired(self, session, store, make_token):
        import jwt
        token = jwt.encode({"sub": "u"}, "test-secret", algorithm="HS256")
        store._data.update({StorageKeys.AUTH_TOKEN: token, StorageKeys.COOKIES: "sid=1"})
        assert run(session.initialize()) is True

    def test_restores_instance_fields(self, session, store):
        store._data.update({
            StorageKeys.INSTANCE_TYPE: "custom",
            StorageKeys.INSTANCE_URL: "https://dify.example.com",
            StorageKeys.API_PREFIX: "https://dify.example.com/console/api",
            StorageKeys.BASE_URL: "https://dify.example.com",
        })
        run(session.initialize())
        assert session.instance_type is InstanceType.CUSTOM
        assert session.instance_url == "https://dify.example.com"
        assert session.base_url == "https://dify.example.com"
        assert run(session.get_public_api_prefix()) == "https://dify.example.com/console/api"


# ====================================================================
# refresh_auth_token()
# ====================================================================

class TestRefresh:

    def test_refresh_401_logs_out(self, session, fake_http, make_token):
        run(session.set_auth_tokens(make_token(), "r"))
        fake_http.add("POST", "/oauth/token/refresh", 401, {"message": "expired"})

        assert run(session.refresh_auth_token("r")) is False
        assert session.is_authenticated is False
        assert session.access_token is None

    def test_network_error_logs_out(self, session, fake_http, make_token):
        run(session.set_auth_tokens(make_token(), "r"))
        fake_http.add("POST", "/oauth/token/refresh",
                      exc=requests.ConnectionError("offline"))
        assert run(session.refresh_auth_token("r")) is False
        assert session.is_authenticated is False

    def test_body_without_token_logs_out(self, session, fake_http, make_token):
        run(session.set_auth_tokens(make_token(), "r"))
        fake_http.add("POST", "/oauth/token/refresh", 200, {"unexpected": True})
        assert run(session.refresh_auth_token("r")) is False

    def test_success_stores_pair(self, session, store, fake_http):
        fake_http.add("POST", "/oauth/token/refresh", 200,
                      {"access_token": "a2", "refresh_token": "r2"})
        assert run(session.refresh_auth_token("r1")) is True
        assert session.access_token == "a2"
        assert session.refresh_token == "r2"
        assert store._data[StorageKeys.AUTH_TOKEN] == "a2"

    def test_uses_explicit_api_prefix(self, session, fake_http):
        run(session.set_api_prefix("https://dify.example.com/console/api"))
        fake_http.add("POST", "/oauth/token/refresh", 200, {"access_token": "a", "refresh_token": "b"})
        run(session.refresh_auth_token("r"))
        url = fake_http.calls[0][1]
        assert url == "https://dify.example.com/console/api/oauth/token/refresh"


# ====================================================================
# Prefixes, instance and sign-in URL
# ====================================================================

class TestPrefixes:

    def test_public_prefix_defaults_to_api_prefix(self, session):
        run(session.set_api_prefix("https://x/api"))
        assert run(session.get_public_api_prefix()) == "https://x/api"
        assert run(session.get_api_prefix()) == "https://x/api"

    def test_explicit_public_prefix(self, session, store):
        run(session.set_api_prefix("https://x/console/api", "https://x/api"))
        assert run(session.get_public_api_prefix()) == "https://x/api"
        assert store._data[StorageKeys.PUBLIC_API_PREFIX] == "https://x/api"

    def test_set_api_prefix_write_failure_raises(self, session, store):
        store.fail_writes = True
        with pytest.raises(StoreError):
            run(session.set_api_prefix("https://x/api"))
        assert run(session.get_public_api_prefix()) == ""

    def test_default_cloud_prefix(self, session):
        assert run(session.get_api_prefix()) == "https://cloud.dify.ai/console/api"

    def test_custom_instance_prefix_and_sign_in(self, session, store):
        run(session.set_instance_type(InstanceType.CUSTOM, "dify.example.com"))
        assert session.instance_url == "https://dify.example.com"
        assert store._data[StorageKeys.INSTANCE_TYPE] == "custom"
        assert store._data[StorageKeys.INSTANCE_URL] == "https://dify.example.com"
        assert session.get_sign_in_url() == "https://dify.example.com/signin"
        assert run(session.get_api_prefix()) == "https://dify.example.com/console/api"

    def test_cloud_ignores_custom_domain(self, session):
        run(session.set_instance_type(InstanceType.CUSTOM, "dify.example.com"))
        run(session.set_instance_type(InstanceType.CLOUD, "dify.example.com"))
        assert session.instance_url == "https://cloud.dify.ai"
        assert session.get_sign_in_url() == "https://cloud.dify.ai/signin"
        assert run(session.get_api_prefix()) == "https://cloud.dify.ai/console/api"

    def test_switching_instance_drops_old_prefix(self, session, store):
        run(session.set_instance_type(InstanceType.CUSTOM, "a.example.com"))
        run(session.set_api_prefix("https://a.example.com/console/api"))
        run(session.set_instance_type(InstanceType.CUSTOM, "b.example.com"))
        assert StorageKeys.API_PREFIX not in store._data
        assert run(session.get_api_prefix()) == "https://b.example.com/console/api"

    def test_instance_type_write_failure_is_logged(self, session, store):
        store.fail_writes = True
        run(session.set_instance_type(InstanceType.CLOUD))
        assert run(session.get_instance_type()) == ""


# ====================================================================
# Tokens, cookies, auth flag
# ====================================================================

class TestCredentials:

    def test_set_auth_tokens_authenticates(self, session, store):
        run(session.set_auth_tokens("abc", "def"))
        assert session.is_authenticated is True
        assert store._data[StorageKeys.AUTH_TOKEN] == "abc"
        assert store._data[StorageKeys.REFRESH_TOKEN] == "def"
        assert run(session.get_token()) == "abc"

    def test_set_auth_tokens_write_failure_raises(self, session, store):
        store.fail_writes = True
        with pytest.raises(StoreError):
            run(session.set_auth_tokens("abc", "def"))
        assert session.is_authenticated is False

    def test_cookies_alone_never_authenticate(self, session, store):
        run(session.set_cookies("sid=1"))
        assert store._data[StorageKeys.COOKIES] == "sid=1"
        assert session.is_authenticated is False
        assert run(session.get_cookies()) == "sid=1"

    def test_cookies_after_token(self, session):
        run(session.set_auth_tokens("abc", "def"))
        run(session.set_cookies("sid=1"))
        assert session.is_authenticated is True

    def test_flag_without_token_refused(self, session, store):
        run(session.set_is_authenticated(True))
        assert store._data[StorageKeys.IS_AUTHENTICATED] == "false"
        assert session.is_authenticated is False

    def test_check_auth_state_reads_flag(self, session, store):
        run(session.set_auth_tokens("abc", "def"))
        store._data[StorageKeys.IS_AUTHENTICATED] = "false"
        assert run(session.check_auth_state()) is False
        store._data[StorageKeys.IS_AUTHENTICATED] = "true"
        assert run(session.check_auth_state()) is True

    def test_check_auth_state_trusts_token_without_cookies(self, session, store, make_token, caplog):
        token = make_token(3600)
        store._data.update({
            StorageKeys.AUTH_TOKEN: token,
            StorageKeys.IS_AUTHENTICATED: "true",
        })
        # Startup needs cookies as well
        assert run(session.initialize()) is False
        assert run(session.check_auth_state()) is True
        assert "trusting the token" in caplog.text

    def test_check_auth_state_flag_without_token(self, session, store):
        store._data[StorageKeys.IS_AUTHENTICATED] = "true"
        assert run(session.check_auth_state()) is False

    def test_auth_headers(self, session):
        run(session.set_auth_tokens("abc", "def"))
        run(session.set_cookies("sid=1"))
        headers = session.auth_headers()
        assert headers["Authorization"] == "Bearer abc"
        assert headers["Cookie"] == "sid=1"
        assert session.auth_headers("other")["Authorization"] == "Bearer other"

    def test_describe_has_no_secrets(self, session):
        run(session.set_auth_tokens("abc", "def"))
        info = session.describe()
        assert "abc" not in str(info)
        assert info["has_token"] is True


# ====================================================================
# logout()
# ====================================================================

class TestLogout:

    def _login(self, session):
        run(session.set_instance_type(InstanceType.CUSTOM, "dify.example.com"))
        run(session.set_api_prefix("https://dify.example.com/console/api", "https://dify.example.com/api"))
        run(session.set_auth_tokens("abc", "def"))
        run(session.set_cookies("sid=1"))
        run(session.set_is_authenticated(True))

    def test_logout_then_initialize_resets_everything(self, session, store):
        self._login(session)
        store._data[StorageKeys.APPS] = "[]"

        run(session.logout())
        assert run(session.initialize()) is False
        assert session.is_authenticated is False
        state = session.state
        assert state.api_prefix == ""
        assert state.public_api_prefix == ""
        assert state.cookies == ""
        assert state.base_url == ""
        assert state.instance_type is InstanceType.CLOUD
        assert state.instance_url == "https://cloud.dify.ai"
        for key in StorageKeys.LOGOUT_KEYS:
            assert key not in store._data

    def test_logout_is_idempotent(self, session, store):
        self._login(session)
        run(session.logout())
        first = (session.state, store.snapshot())
        run(session.logout())
        assert (session.state, store.snapshot()) == first

    def test_logout_keeps_unrelated_keys(self, session, store):
        store._data[StorageKeys.HAS_ONBOARDED] = "true"
        run(session.logout())
        assert store._data[StorageKeys.HAS_ONBOARDED] == "true"

    def test_logout_store_failure_raises_but_resets_memory(self, session, store):
        self._login(session)
        store.fail_writes = True
        with pytest.raises(StoreError):
            run(session.logout())
        assert session.is_authenticated is False
        assert session.access_token is None


# ====================================================================
# Subscriptions
# ====================================================================

class TestSubscribe:

    def test_changes_are_published(self, session):
        seen = []
        unsubscribe = session.subscribe(seen.append)
        run(session.set_auth_tokens("abc", "def"))
        run(session.set_auth_tokens("abc2", "def2"))   # no change
        run(session.logout())
        assert seen == [True, False]

        unsubscribe()
        run(session.set_auth_tokens("abc", "def"))
        assert seen == [True, False]

    def test_failing_subscriber_does_not_break_mutation(self, session):
        def boom(value):
            raise RuntimeError("listener bug")

        session.subscribe(boom)
        run(session.set_auth_tokens("abc", "def"))
        assert session.is_authenticated is True


def test_separate_managers_share_nothing(store, fake_http):
    a = SessionManager(store, http=fake_http)
    b = SessionManager(store, http=fake_http)
    run(a.set_auth_tokens("abc", "def"))
    assert a.is_authenticated is True
    assert b.is_authenticated is False
    assert b.access_token is None
