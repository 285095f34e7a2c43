"""
Login Manager
=============
Drives the hosted Dify sign-in page and turns its redirect into a session.

State machine::

    IDLE ──start_*_login()──▶ BROWSER_OPEN ──/apps redirect──▶ EXTRACTING
      ▲                            ▲                               │
      │                            └──── readiness check failed ───┤
      └──────────── success / cancel() ────────────────────────────┘

Only a transition *from* BROWSER_OPEN enters EXTRACTING, so a redirect that
fires several navigation events is processed once.

Two inputs from the browser:
    - ``handle_navigation(url)`` — every URL change of the main frame
    - ``handle_message(data)``   — in-page messages (``COOKIES``,
      ``API_PREFIX``), applied independently of the state machine

The browser itself is optional; ``BrowserLogin`` (Playwright) attaches one.

Security:
    - Tokens and cookies are never logged.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

import requests

from ..errors import LoginError, StoreError
from ..utils import path_matches, query_param, response_ok, run_blocking
from .instance import InstanceType, origin_of
from .session_manager import SessionManager

logger = logging.getLogger(__name__)


LANDING_PATH = "/apps"


class LoginState(str, Enum):
    IDLE = "idle"
    BROWSER_OPEN = "browser_open"
    EXTRACTING = "extracting"


@dataclass
class LoginResult:
    """Outcome of processing a landing redirect."""
    success: bool
    instance_type: Optional[InstanceType] = None
    base_url: str = ""
    apps: List[Any] = field(default_factory=list)
    error: str = ""


class LoginFlowController:
    """Performs the redirect-based login for cloud and self-hosted instances.

    Usage::

        controller = LoginFlowController(session)
        url = await controller.start_cloud_login()
        # browser navigates to url; feed its events:
        await controller.handle_navigation(current_url)
        await controller.handle_message({"type": "COOKIES", "cookies": "..."})
    """

    def __init__(
        self,
        session: SessionManager,
        *,
        http: Optional[requests.Session] = None,
        apps=None,
        browser=None,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            session:  The process-wide ``SessionManager``.
            http:     HTTP session for the readiness check (default: the
                      session manager's).
            apps:     ``AppRepository`` that caches the fetched app list.
            browser:  Object with ``open(url)`` / ``close()`` coroutines.
            on_error: Called with a user-facing message when a login attempt
                      fails (the browser stays open for retry).
        """
        if apps is None:
            # Import here to avoid circular dependency
            from ..apps import AppRepository
            apps = AppRepository(session.store)
        self.session = session
        self.http = http or session.http
        self.apps = apps
        self.browser = browser
        self.on_error = on_error
        self.state = LoginState.IDLE
        self.last_result: Optional[LoginResult] = None
        self._idle = asyncio.Event()
        self._idle.set()

    # ── State helpers ─────────────────────────────────────────────

    def _transition(self, new_state: LoginState) -> None:
        logger.debug(f"[LOGIN] {self.state.value} → {new_state.value}")
        self.state = new_state
        if new_state is LoginState.IDLE:
            self._idle.set()
        else:
            self._idle.clear()

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until the flow is back to IDLE.  False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # ── Starting a login ──────────────────────────────────────────

    async def start_cloud_login(self) -> str:
        await self.session.set_instance_type(InstanceType.CLOUD)
        url = self.session.get_sign_in_url()
        logger.info(f"[LOGIN] Starting cloud login: {url}")
        await self._open(url)
        return url

    async def start_custom_login(self, domain: str) -> str:
        """
        Raises:
            LoginError: empty or unusable domain.
        """
        if not (domain or "").strip():
            raise LoginError("Please enter your Dify instance domain")
        try:
            await self.session.set_instance_type(InstanceType.CUSTOM, domain)
        except ValueError as exc:
            raise LoginError(str(exc)) from exc
        url = self.session.get_sign_in_url()
        logger.info(f"[LOGIN] Starting custom login: {url}")
        await self._open(url)
        return url

    async def _open(self, url: str) -> None:
        self._transition(LoginState.BROWSER_OPEN)
        if self.browser is not None:
            try:
                await self.browser.open(url)
            except Exception as exc:
                self._transition(LoginState.IDLE)
                logger.error(f"[LOGIN] Failed to open browser: {exc}")
                raise LoginError("Failed to start login process") from exc

    async def cancel(self) -> None:
        """User closed the browser."""
        if self.state is not LoginState.IDLE:
            logger.info("[LOGIN] Login cancelled")
        self._transition(LoginState.IDLE)

    # ── Browser events ────────────────────────────────────────────

    async def handle_navigation(self, url: str) -> Optional[LoginResult]:
        """Inspect a URL change.

        Returns:
            A ``LoginResult`` when this event was the landing redirect,
            otherwise None (ignored event).
        """
        if not url:
            return None
        # Query string carries the tokens
        logger.debug(f"[LOGIN] Navigation: {url.split('?', 1)[0][:100]}")

        if not path_matches(url, LANDING_PATH):
            return None
        if self.state is not LoginState.BROWSER_OPEN:
            logger.debug(f"[LOGIN] Landing event ignored in state {self.state.value}")
            return None

        self._transition(LoginState.EXTRACTING)
        extracted = False
        try:
            result = await self._extract(url)
            extracted = True
        except LoginError as exc:
            logger.error(f"[LOGIN] Failed to complete login process: {exc}")
            result = LoginResult(success=False, error=str(exc))
            self._transition(LoginState.BROWSER_OPEN)
            self.last_result = result
            if self.on_error:
                self.on_error("Failed to complete login process")
            return result
        finally:
            # Never stay in EXTRACTING, or later landing events are ignored
            if not extracted and self.state is LoginState.EXTRACTING:
                logger.error("[LOGIN] Login processing aborted")
                self._transition(LoginState.BROWSER_OPEN)

        self.last_result = result
        await self._close_browser()
        self._transition(LoginState.IDLE)
        return result

    async def _extract(self, url: str) -> LoginResult:
        access_token = query_param(url, "access_token")
        refresh_token = query_param(url, "refresh_token")

        result = LoginResult(success=False)
        if access_token:
            try:
                await self.session.set_auth_tokens(access_token, refresh_token)
            except StoreError as exc:
                raise LoginError(f"could not store tokens: {exc}") from exc

            base_url = origin_of(url)
            itype = self.session.resolver.type_for_url(url)
            await self.session.set_instance_type(itype, base_url or None)
            if base_url:
                await self.session.set_base_url(base_url)
            result.instance_type = itype
            result.base_url = base_url
            logger.debug(f"[LOGIN] Saved instance info: type={itype.value}, base_url={base_url}")

        token = access_token or self.session.access_token
        if not token:
            raise LoginError("redirect carried no access token")

        api_prefix = await self.session.get_api_prefix()
        try:
            resp = await run_blocking(
                self.http.get,
                f"{api_prefix}/apps",
                headers=self.session.auth_headers(token),
                timeout=self.session.request_timeout,
            )
        except requests.RequestException as exc:
            raise LoginError(f"apps request failed: {exc}") from exc
        if not response_ok(resp):
            raise LoginError(f"Failed to fetch apps: {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise LoginError("apps response is not JSON") from exc

        try:
            await self.session.set_is_authenticated(True)
        except StoreError as exc:
            raise LoginError(f"could not store auth flag: {exc}") from exc
        try:
            result.apps = await self.apps.cache_remote(payload)
        except StoreError as exc:
            # Login itself succeeded; the list is refetched on demand
            logger.error(f"[LOGIN] Failed to cache apps: {exc}")
        logger.info(f"[LOGIN] Successfully fetched apps ({len(result.apps)})")
        result.success = True
        return result

    async def _close_browser(self) -> None:
        if self.browser is None:
            return
        try:
            await self.browser.close()
        except Exception as exc:
            logger.debug(f"[LOGIN] Browser close error: {exc}")

    async def handle_message(self, data: Any) -> None:
        """Apply an in-page message (dict or JSON string)."""
        if isinstance(data, (str, bytes)):
            try:
                data = json.loads(data)
            except ValueError:
                logger.debug("[LOGIN] Ignoring non-JSON browser message")
                return
        if not isinstance(data, dict):
            return

        kind = data.get("type")
        try:
            if kind == "COOKIES":
                cookies = data.get("cookies") or ""
                if cookies:
                    await self.session.set_cookies(cookies)
                    logger.debug("[LOGIN] Cookies saved successfully")
            elif kind == "API_PREFIX":
                api_prefix = data.get("apiPrefix")
                if api_prefix:
                    await self.session.set_api_prefix(api_prefix, data.get("publicApiPrefix"))
                    logger.debug("[LOGIN] API prefixes saved successfully")
            else:
                logger.debug(f"[LOGIN] Unknown browser message type: {kind!r}")
        except StoreError as exc:
            logger.error(f"[LOGIN] Error processing browser message {kind}: {exc}")
