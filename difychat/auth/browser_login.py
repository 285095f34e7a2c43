"""
Browser Login
=============
Opens a headed (visible) Chromium window on the Dify sign-in page and feeds
its events to a ``LoginFlowController``.

Workflow:
    1. Launch Chromium, open a context with the message bridge installed
    2. Navigate to the sign-in URL (cloud or self-hosted)
    3. User signs in (SSO, MFA, CAPTCHA all happen in the window)
    4. Every main-frame navigation goes to ``handle_navigation``
    5. ``window.ReactNativeWebView.postMessage(...)`` calls from the page go
       to ``handle_message``
    6. On success the instance cookies are captured and the window closes

Usage::

    from difychat.auth.browser_login import run_browser_login

    result = await run_browser_login(session)                       # cloud
    result = await run_browser_login(session, custom_domain="dify.example.com")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set
from urllib.parse import urlparse

from playwright.async_api import BrowserContext, Frame, Page, async_playwright

from ..errors import LoginError
from ..utils import DEFAULT_USER_AGENT, cookie_header
from .login_manager import LoginFlowController, LoginResult
from .session_manager import SessionManager

logger = logging.getLogger(__name__)


_BRIDGE_FUNCTION = "__difychatPostMessage"

# The hosted page talks to a mobile WebView through this object
_BRIDGE_SCRIPT = """
(() => {
  if (window.ReactNativeWebView) return;
  window.ReactNativeWebView = {
    postMessage: (data) => window.%s(typeof data === 'string' ? data : JSON.stringify(data)),
  };
})();
""" % _BRIDGE_FUNCTION


class BrowserLogin:
    """Playwright-backed browser for ``LoginFlowController``.

    Implements the ``open(url)`` / ``close()`` contract the controller
    expects.  Call ``attach(controller)`` before ``open``.
    """

    def __init__(
        self,
        *,
        headless: bool = False,
        user_agent: str = DEFAULT_USER_AGENT,
        viewport_width: int = 1280,
        viewport_height: int = 900,
        capture_cookies: bool = True,
    ):
        self.headless = headless
        self.user_agent = user_agent
        self.viewport = {"width": viewport_width, "height": viewport_height}
        self.capture_cookies = capture_cookies
        self.controller: Optional[LoginFlowController] = None
        self._pw = None
        self._browser = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closing = False

    def attach(self, controller: LoginFlowController) -> None:
        self.controller = controller
        controller.browser = self

    @property
    def is_open(self) -> bool:
        return self._page is not None

    # ── Controller contract ───────────────────────────────────────

    async def open(self, url: str) -> None:
        if self.controller is None:
            raise RuntimeError("BrowserLogin.open() called before attach()")
        if self._page is None:
            await self._launch()
        logger.info(f"[BROWSER] Navigating to: {url[:100]}")
        try:
            await self._page.goto(url, wait_until="load", timeout=60_000)
        except Exception as e:
            # SSO redirects can abort the initial load; events still arrive
            logger.warning(f"[BROWSER] Initial navigation issue: {e}")

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        try:
            result = self.controller.last_result if self.controller else None
            if self.capture_cookies and result is not None and result.success:
                await self._capture_cookies(result.base_url)
        finally:
            await self._shutdown()
            self._closing = False

    # ── Internal ──────────────────────────────────────────────────

    async def _launch(self) -> None:
        self._pw = await async_playwright().start()
        self._browser = await self._pw.chromium.launch(
            headless=self.headless,
            args=['--no-sandbox', '--disable-dev-shm-usage'],
        )
        self._context = await self._browser.new_context(
            viewport=self.viewport,
            user_agent=self.user_agent,
        )
        await self._context.expose_function(_BRIDGE_FUNCTION, self._on_bridge_message)
        await self._context.add_init_script(_BRIDGE_SCRIPT)

        self._page = await self._context.new_page()
        self._page.on("framenavigated", self._on_frame_navigated)
        self._page.on("close", self._on_page_closed)
        logger.info("[BROWSER] Login window opened")

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[BROWSER] Event handler failed: {task.exception()}")

    def _on_frame_navigated(self, frame: Frame) -> None:
        if self._page is None or frame != self._page.main_frame:
            return
        self._spawn(self.controller.handle_navigation(frame.url))

    def _on_bridge_message(self, data: str) -> None:
        self._spawn(self.controller.handle_message(data))

    def _on_page_closed(self, page: Page) -> None:
        if self._closing:
            return
        logger.info("[BROWSER] Login window closed by user")
        self._page = None
        self._spawn(self.controller.cancel())

    async def _capture_cookies(self, base_url: str) -> None:
        if self._context is None:
            return
        session = self.controller.session
        if session.cookies:
            return
        try:
            cookies = await self._context.cookies()
        except Exception as e:
            logger.debug(f"[BROWSER] Cookie read error: {e}")
            return
        host = (urlparse(base_url).hostname or "").lower() if base_url else None
        header = cookie_header(cookies, host=host)
        if header:
            await session.set_cookies(header)
            logger.info(f"[BROWSER] Captured {len(header.split('; '))} cookies from login window")

    async def _shutdown(self) -> None:
        page, self._page = self._page, None
        context, self._context = self._context, None
        browser, self._browser = self._browser, None
        pw, self._pw = self._pw, None
        for closable in (page, context, browser):
            if closable is None:
                continue
            try:
                await closable.close()
            except Exception as e:
                logger.debug(f"[BROWSER] Close error ({type(closable).__name__}): {e}")
        if pw is not None:
            try:
                await pw.stop()
            except Exception as e:
                logger.debug(f"[BROWSER] Playwright stop error: {e}")


async def run_browser_login(
    session: SessionManager,
    *,
    custom_domain: Optional[str] = None,
    headless: bool = False,
    timeout_seconds: float = 600,
    user_agent: str = DEFAULT_USER_AGENT,
) -> LoginResult:
    """Open the login window and wait until sign-in finishes or is cancelled.

    Raises:
        LoginError: the browser could not start, the user closed it, or the
            timeout elapsed without a successful login.
    """
    browser = BrowserLogin(headless=headless, user_agent=user_agent)
    errors = []
    controller = LoginFlowController(session, on_error=errors.append)
    browser.attach(controller)

    try:
        if custom_domain:
            await controller.start_custom_login(custom_domain)
        else:
            await controller.start_cloud_login()

        finished = await controller.wait_idle(timeout_seconds)
        if not finished:
            await controller.cancel()
            raise LoginError(f"Login not completed within {timeout_seconds:.0f}s")
    finally:
        await browser.close()

    result = controller.last_result
    if result is None or not result.success:
        detail = errors[-1] if errors else "Login cancelled"
        raise LoginError(detail)
    return result
