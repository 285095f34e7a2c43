"""
Auth Gate
=========
Keeps the active navigation root (login surface vs. app surface) in step
with the session.

Two update paths:
    - push: ``SessionManager.subscribe`` — changes arrive as they happen
    - poll: ``check_auth_state()`` every ``interval`` seconds, for changes
      made through the store by another process

Both funnel into ``_apply()``, so listeners see each root change once.

Usage::

    async with AuthGate(session) as gate:
        gate.on_change(lambda root: print("now showing", root.value))
        ...
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional

from .session_manager import SessionManager

logger = logging.getLogger(__name__)

_DEFAULT_INTERVAL = 1.0


class Root(str, Enum):
    LOADING = "loading"
    LOGIN = "login"
    APPS = "apps"


class AuthGate:
    """Exposes ``root`` and notifies listeners when it changes."""

    def __init__(self, session: SessionManager, *, interval: float = _DEFAULT_INTERVAL, poll: bool = True):
        self.session = session
        self.interval = interval
        self.poll = poll
        self.root = Root.LOADING
        self._listeners: List[Callable[[Root], None]] = []
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None or self._unsubscribe is not None

    def on_change(self, callback: Callable[[Root], None]) -> Callable[[], None]:
        """Register *callback(root)*; returns a function that removes it."""
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    async def start(self) -> Root:
        """Pick the initial root, then follow the session."""
        if self.running:
            return self.root
        try:
            is_auth = await self.session.check_auth_state()
            logger.debug(f"[GATE] Auth state checked: {is_auth}")
        except Exception as exc:
            logger.error(f"[GATE] Failed to check auth state: {exc}")
            is_auth = False
        self._apply(is_auth)

        self._unsubscribe = self.session.subscribe(self._apply)
        if self.poll:
            self._task = asyncio.ensure_future(self._poll_loop())
        return self.root

    async def stop(self) -> None:
        """Cancel polling and drop the subscription.  Safe to call twice."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.debug("[GATE] Stopped")

    async def __aenter__(self) -> "AuthGate":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ── Internal ──────────────────────────────────────────────────

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                is_auth = await self.session.check_auth_state()
            except Exception as exc:
                logger.error(f"[GATE] Poll failed: {exc}")
                continue
            logger.debug(f"[GATE] Polling auth state: {is_auth}")
            self._apply(is_auth)

    def _apply(self, is_authenticated: bool) -> None:
        root = Root.APPS if is_authenticated else Root.LOGIN
        if root == self.root:
            return
        logger.info(f"[GATE] Root {self.root.value} → {root.value}")
        self.root = root
        for callback in list(self._listeners):
            try:
                callback(root)
            except Exception as exc:
                logger.error(f"[GATE] Listener {callback!r} failed: {exc}")
