"""
Session Manager
===============
Single source of truth for "may this device call the instance API, and with
which credentials".

Responsibilities:
    1. Rehydrate the session from the ``CredentialStore`` at startup.
    2. Check the access token's ``exp`` claim; refresh it or log out.
    3. Persist tokens, cookies, instance type and API prefixes.
    4. Publish authentication changes to subscribers (``AuthGate``).

One ``SessionManager`` is built at process start and handed to every
collaborator that needs session data. There is no module-level instance.

Invariant:
    ``is_authenticated`` is never True while no access token is held.

Failure semantics:
    - Read failures degrade to defaults and are logged.
    - Credential writes (tokens, cookies, API prefixes) raise ``StoreError``.
    - A failed refresh or an undecodable token ends in ``logout()``.

Security:
    - Tokens and cookies are never logged, only whether they are present.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

import jwt
import requests

from ..errors import StoreError
from ..utils import create_http_session, response_ok, run_blocking
from .credential_store import CredentialStore, StorageKeys
from .instance import CLOUD_INSTANCE_URL, InstanceResolver, InstanceType, origin_of, sign_in_url

logger = logging.getLogger(__name__)


_REFRESH_PATH = "/oauth/token/refresh"

_INIT_KEYS = (
    StorageKeys.AUTH_TOKEN,
    StorageKeys.REFRESH_TOKEN,
    StorageKeys.INSTANCE_URL,
    StorageKeys.INSTANCE_TYPE,
    StorageKeys.API_PREFIX,
    StorageKeys.PUBLIC_API_PREFIX,
    StorageKeys.COOKIES,
    StorageKeys.BASE_URL,
)


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

@dataclass
class Session:
    """In-memory session state (tokens are persisted separately)."""
    is_authenticated: bool = False
    instance_type: InstanceType = InstanceType.CLOUD
    instance_url: str = CLOUD_INSTANCE_URL
    api_prefix: str = ""
    public_api_prefix: str = ""
    cookies: str = ""
    base_url: str = ""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


def token_expiry(token: str) -> Optional[float]:
    """Return the ``exp`` claim of a JWT (epoch seconds) without verifying it.

    Returns None when the token carries no ``exp``.

    Raises:
        jwt.InvalidTokenError: the token cannot be decoded.
    """
    claims = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    exp = claims.get("exp")
    if exp is None:
        return None
    try:
        return float(exp)
    except (TypeError, ValueError) as exc:
        raise jwt.InvalidTokenError(f"non-numeric exp claim: {exp!r}") from exc


def is_token_expired(token: str, now: Optional[float] = None) -> bool:
    exp = token_expiry(token)
    if exp is None:
        return False
    return exp <= (time.time() if now is None else now)


class SessionManager:
    """Owns authentication state for one process.

    Lifecycle::

        session = SessionManager(store)
        await session.initialize()          # before any other accessor
        headers = session.auth_headers()
        ...
        await session.logout()
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        http: Optional[requests.Session] = None,
        resolver: Optional[InstanceResolver] = None,
        request_timeout: float = 30,
    ):
        self.store = store
        self.http = http or create_http_session()
        self.resolver = resolver or InstanceResolver()
        self.request_timeout = request_timeout
        self._state = self._default_state()
        self._subscribers: List[Callable[[bool], None]] = []

    # ── State access ──────────────────────────────────────────────

    def _default_state(self) -> Session:
        return Session(instance_url=self.resolver.cloud_url)

    @property
    def state(self) -> Session:
        """A copy of the current state."""
        return replace(self._state)

    @property
    def is_authenticated(self) -> bool:
        return self._state.is_authenticated

    def _set_authenticated(self, value: bool) -> None:
        value = bool(value) and bool(self._state.access_token)
        if value == self._state.is_authenticated:
            return
        self._state.is_authenticated = value
        logger.debug(f"[SESSION] Authenticated → {value}")
        self._publish(value)

    @property
    def instance_type(self) -> InstanceType:
        return self._state.instance_type

    @property
    def instance_url(self) -> str:
        return self._state.instance_url

    @property
    def access_token(self) -> Optional[str]:
        return self._state.access_token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._state.refresh_token

    @property
    def cookies(self) -> str:
        return self._state.cookies

    @property
    def base_url(self) -> str:
        return self._state.base_url

    # ── Subscriptions ─────────────────────────────────────────────

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Call *callback(is_authenticated)* on every change.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, value: bool) -> None:
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception as exc:
                logger.error(f"[SESSION] Subscriber {callback!r} failed: {exc}")

    # ── Startup ───────────────────────────────────────────────────

    async def _safe_get(self, key: str) -> Optional[str]:
        try:
            return await self.store.get_item(key)
        except StoreError as exc:
            logger.error(f"[SESSION] Failed to read {key}: {exc}")
            return None

    async def initialize(self) -> bool:
        """Load persisted state and validate the access token.

        Returns:
            The resulting ``is_authenticated``.  Never raises.
        """
        (token, refresh, url, itype, api_prefix, public_prefix, cookies, base_url) = (
            await asyncio.gather(*(self._safe_get(key) for key in _INIT_KEYS))
        )

        logger.debug(
            f"[SESSION] Initializing: has_token={bool(token)}, "
            f"has_refresh={bool(refresh)}, type={itype}, url={url}, "
            f"api_prefix={api_prefix}, has_cookies={bool(cookies)}, base_url={base_url}"
        )

        self._state.access_token = token or None
        self._state.refresh_token = refresh or None
        self._state.instance_url = url or self.resolver.cloud_url
        self._state.instance_type = InstanceType.parse(itype)
        self._state.api_prefix = api_prefix or ""
        self._state.public_api_prefix = public_prefix or ""
        self._state.cookies = cookies or ""
        self._state.base_url = base_url or ""
        self._set_authenticated(bool(token) and bool(cookies))

        if token:
            try:
                expired = is_token_expired(token)
            except jwt.InvalidTokenError as exc:
                logger.error(f"[SESSION] Failed to parse token: {exc}")
                await self._logout_quietly()
                return self.is_authenticated

            if expired:
                logger.info("[SESSION] Token expired — attempting refresh")
                if refresh:
                    if await self.refresh_auth_token(refresh):
                        # Fresh token, but cookies are still required
                        self._set_authenticated(bool(self._state.cookies))
                else:
                    await self._logout_quietly()

        return self.is_authenticated

    async def _logout_quietly(self) -> None:
        try:
            await self.logout()
        except StoreError as exc:
            logger.error(f"[SESSION] Logout during initialize failed: {exc}")

    # ── Instance ──────────────────────────────────────────────────

    async def set_instance_type(self, instance_type, instance_url: Optional[str] = None) -> None:
        """Select cloud or a self-hosted instance.

        For ``custom``, *instance_url* is normalised (``https://`` added).
        Cloud always resolves to the cloud URL.  Switching to a different
        instance drops any previously set API prefixes.

        Raises:
            ValueError: ``custom`` without a usable domain.
        """
        itype = InstanceType.parse(instance_type)
        if itype is InstanceType.CUSTOM and not instance_url:
            # Type only (e.g. detected from a login redirect)
            instance = None
        else:
            instance = self.resolver.resolve(itype, instance_url)

        try:
            await self.store.set_item(StorageKeys.INSTANCE_TYPE, itype.value)
            self._state.instance_type = itype
            if instance is not None:
                if instance.url != self._state.instance_url:
                    self._state.api_prefix = ""
                    self._state.public_api_prefix = ""
                    await self.store.multi_remove(
                        [StorageKeys.API_PREFIX, StorageKeys.PUBLIC_API_PREFIX]
                    )
                await self.store.set_item(StorageKeys.INSTANCE_URL, instance.url)
                await self.store.set_item(StorageKeys.BASE_URL, instance.url)
                self._state.instance_url = instance.url
                self._state.base_url = instance.url
            logger.debug(f"[SESSION] Instance type set: {itype.value} ({self._state.instance_url})")
        except StoreError as exc:
            logger.error(f"[SESSION] Failed to set instance type: {exc}")

    async def get_instance_type(self) -> str:
        try:
            itype = await self.store.get_item(StorageKeys.INSTANCE_TYPE)
        except StoreError as exc:
            logger.error(f"[SESSION] Failed to get instance type: {exc}")
            return ""
        return itype or ""

    async def set_base_url(self, url: str) -> None:
        try:
            await self.store.set_item(StorageKeys.BASE_URL, url)
            self._state.base_url = url
            logger.debug(f"[SESSION] Base url set: {url}")
        except StoreError as exc:
            logger.error(f"[SESSION] Failed to set base url: {exc}")

    async def get_base_url(self) -> str:
        try:
            base_url = await self.store.get_item(StorageKeys.BASE_URL)
        except StoreError as exc:
            logger.error(f"[SESSION] Failed to get base url: {exc}")
            return ""
        return base_url or ""

    def get_sign_in_url(self) -> str:
        """Hosted sign-in page for the current instance."""
        return sign_in_url(self._state.instance_url)

    # ── API prefixes ──────────────────────────────────────────────

    async def set_api_prefix(self, api_prefix: str, public_api_prefix: Optional[str] = None) -> None:
        """Persist both prefixes; the public one defaults to *api_prefix*.

        Raises:
            StoreError: the prefixes could not be stored.
        """
        public = public_api_prefix or api_prefix
        try:
            await asyncio.gather(
                self.store.set_item(StorageKeys.API_PREFIX, api_prefix),
                self.store.set_item(StorageKeys.PUBLIC_API_PREFIX, public),
            )
        except StoreError as exc:
            logger.error(f"[SESSION] Failed to set API prefixes: {exc}")
            raise
        self._state.api_prefix = api_prefix
        self._state.public_api_prefix = public
        logger.debug(f"[SESSION] API prefixes set: {api_prefix} / {public}")

    async def get_api_prefix(self) -> str:
        """Cached prefix, or the resolver default for this instance."""
        if not self._state.api_prefix:
            self._state.api_prefix = self.resolver.default_api_prefix(
                self._state.instance_type, self._state.instance_url
            )
        return self._state.api_prefix

    async def get_public_api_prefix(self) -> str:
        return self._state.public_api_prefix or self._state.api_prefix or ""

    # ── Tokens ────────────────────────────────────────────────────

    async def set_auth_tokens(self, access_token: str, refresh_token: Optional[str]) -> None:
        """Store a token pair and mark the session authenticated.

        Raises:
            StoreError: the tokens could not be stored.
        """
        try:
            writes = [self.store.set_item(StorageKeys.AUTH_TOKEN, access_token)]
            if refresh_token:
                writes.append(self.store.set_item(StorageKeys.REFRESH_TOKEN, refresh_token))
            await asyncio.gather(*writes)
        except StoreError as exc:
            logger.error(f"[SESSION] Failed to set auth tokens: {exc}")
            raise
        self._state.access_token = access_token
        if refresh_token:
            self._state.refresh_token = refresh_token
        self._set_authenticated(True)
        logger.debug("[SESSION] Auth tokens set")

    async def get_token(self) -> Optional[str]:
        try:
            token = await self.store.get_item(StorageKeys.AUTH_TOKEN)
        except StoreError as exc:
            logger.error(f"[SESSION] Failed to get token: {exc}")
            return self._state.access_token
        return token or None

    async def refresh_auth_token(self, refresh_token: str) -> bool:
        """Exchange *refresh_token* for a new pair.

        Any failure (non-2xx, network error, malformed body) logs the
        session out.

        Returns:
            True if a new pair was stored.
        """
        url = f"{await self.get_api_prefix()}{_REFRESH_PATH}"
        try:
            resp = await run_blocking(
                self.http.post,
                url,
                json={"refresh_token": refresh_token},
                headers={"Content-Type": "application/json"},
                timeout=self.request_timeout,
            )
            if not response_ok(resp):
                raise RuntimeError(f"refresh returned HTTP {resp.status_code}")
            data = resp.json()
            access = data.get("access_token") if isinstance(data, dict) else None
            if not access:
                raise RuntimeError("refresh response has no access_token")
            await self.set_auth_tokens(access, data.get("refresh_token"))
            logger.info("[SESSION] Token refreshed")
            return True
        except (requests.RequestException, ValueError, RuntimeError, StoreError) as exc:
            logger.error(f"[SESSION] Failed to refresh token: {exc}")
            await self._logout_quietly()
            return False

    # ── Cookies ───────────────────────────────────────────────────

    async def set_cookies(self, cookie_string: str) -> None:
        """Store the raw cookie header captured from the login browser.

        Raises:
            StoreError: the cookies could not be stored.
        """
        try:
            await self.store.set_item(StorageKeys.COOKIES, cookie_string)
        except StoreError as exc:
            logger.error(f"[SESSION] Failed to set cookies: {exc}")
            raise
        self._state.cookies = cookie_string
        self._set_authenticated(bool(self._state.access_token) and bool(cookie_string))
        logger.debug("[SESSION] Cookies set")

    async def get_cookies(self) -> str:
        return self._state.cookies or ""

    # ── Auth flag (navigation gate) ───────────────────────────────

    async def set_is_authenticated(self, value: bool) -> None:
        """Persist the gate flag.  Ignored (False) while no token is held.

        Raises:
            StoreError: the flag could not be stored.
        """
        if value and not self._state.access_token:
            logger.warning("[SESSION] Refusing to mark session authenticated without a token")
            value = False
        try:
            await self.store.set_item(StorageKeys.IS_AUTHENTICATED, "true" if value else "false")
        except StoreError as exc:
            logger.error(f"[SESSION] Failed to set auth flag: {exc}")
            raise
        self._set_authenticated(value)

    async def check_auth_state(self) -> bool:
        """Re-read the persisted gate flag (falls back to memory).

        The flag is trusted as long as an access token is held, even without
        cookies: a login whose cookies arrive later (or never, with
        ``login --paste``) keeps the app surface.  ``initialize()`` is the
        only place that requires token and cookies together.
        """
        try:
            stored = await self.store.get_item(StorageKeys.IS_AUTHENTICATED)
        except StoreError as exc:
            logger.error(f"[SESSION] Failed to read auth flag: {exc}")
            stored = None
        if stored is not None:
            if stored == "true" and not self._state.cookies:
                logger.debug("[SESSION] Auth flag set without cookies; trusting the token")
            self._set_authenticated(stored == "true")
        return self.is_authenticated

    # ── Logout ────────────────────────────────────────────────────

    async def logout(self) -> None:
        """Clear every auth/instance key and reset to defaults.

        Idempotent.  In-memory state is reset first, so a store failure
        still leaves this process logged out.

        Raises:
            StoreError: the persisted keys could not be removed.
        """
        self._state.access_token = None
        self._state.refresh_token = None
        self._set_authenticated(False)
        self._state = self._default_state()
        try:
            await self.store.multi_remove(StorageKeys.LOGOUT_KEYS)
        except StoreError as exc:
            logger.error(f"[SESSION] Failed to logout: {exc}")
            raise
        logger.debug("[SESSION] Logged out")

    # ── Downstream helpers ────────────────────────────────────────

    def auth_headers(self, token: Optional[str] = None) -> Dict[str, str]:
        """Bearer headers for console API calls."""
        headers = {"Content-Type": "application/json"}
        bearer = token or self._state.access_token
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        if self._state.cookies:
            headers["Cookie"] = self._state.cookies
        return headers

    def describe(self) -> Dict[str, object]:
        """Loggable summary (no secrets)."""
        return {
            "authenticated": self._state.is_authenticated,
            "instance_type": self._state.instance_type.value,
            "instance_url": self._state.instance_url,
            "origin": origin_of(self._state.base_url) or self._state.base_url,
            "api_prefix": self._state.api_prefix,
            "public_api_prefix": self._state.public_api_prefix,
            "has_token": bool(self._state.access_token),
            "has_refresh_token": bool(self._state.refresh_token),
            "has_cookies": bool(self._state.cookies),
        }
