"""
App Repository
==============
Locally cached list of Dify apps (assistant endpoints).

Two historical formats reach the ``apps`` key:
    - the console payload fetched at login: ``{"data": [{id, name, mode, ...}]}``
    - apps added by hand: ``[{id, appId, appKey, apiUrl}]``

Both are normalised into ``StoredApp`` once, on load, and saved back as a
flat JSON list in the canonical shape.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Optional

import requests

from .auth.credential_store import CredentialStore, StorageKeys
from .errors import DifyAPIError, SessionExpiredError, StoreError
from .utils import error_message, response_ok, run_blocking

logger = logging.getLogger(__name__)


DEFAULT_API_URL = "https://api.dify.ai/v1"

# camelCase keys written by the hand-entry form
_LEGACY_KEYS = {
    "appId": "app_id",
    "appKey": "app_key",
    "apiUrl": "api_url",
}


@dataclass
class StoredApp:
    """One app.  Console apps carry metadata; hand-added apps carry a key."""
    id: str
    name: str = ""
    description: str = ""
    mode: str = ""
    icon: str = ""
    icon_type: str = ""
    icon_background: str = ""
    icon_url: str = ""
    created_at: float = 0
    app_id: str = ""
    app_key: str = ""
    api_url: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.app_id or self.id

    @property
    def can_chat(self) -> bool:
        """True if the app has what ``DifyAppClient`` needs."""
        return bool(self.app_key and self.api_url)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Optional["StoredApp"]:
        data = {_LEGACY_KEYS.get(k, k): v for k, v in raw.items()}
        if not data.get("id"):
            return None
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known and v is not None}
        kwargs["id"] = str(kwargs["id"])
        try:
            kwargs["created_at"] = float(kwargs.get("created_at") or 0)
        except (TypeError, ValueError):
            kwargs["created_at"] = 0
        return cls(**kwargs)


def normalize_apps(raw: Any) -> List[StoredApp]:
    """Accept a list, ``{"data": [...]}``, or a JSON string of either."""
    if raw is None:
        return []
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("[APPS] Stored app list is not valid JSON — ignoring")
            return []
    if isinstance(raw, dict):
        raw = raw.get("data") or []
    if not isinstance(raw, list):
        logger.warning(f"[APPS] Unexpected app list type: {type(raw).__name__}")
        return []

    apps = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        app = StoredApp.from_dict(entry)
        if app is not None:
            apps.append(app)
    return apps


class AppRepository:
    """Reads and writes the ``apps`` key."""

    def __init__(self, store: CredentialStore):
        self.store = store

    async def load(self) -> List[StoredApp]:
        """Apps sorted newest first.  Read failures give an empty list."""
        try:
            raw = await self.store.get_item(StorageKeys.APPS)
        except StoreError as exc:
            logger.error(f"[APPS] Failed to load apps: {exc}")
            return []
        apps = normalize_apps(raw)
        apps.sort(key=lambda a: a.created_at, reverse=True)
        return apps

    async def save(self, apps: List[StoredApp]) -> None:
        """Raises ``StoreError`` if the list cannot be written."""
        payload = json.dumps([a.to_dict() for a in apps])
        await self.store.set_item(StorageKeys.APPS, payload)
        logger.debug(f"[APPS] Saved {len(apps)} apps")

    async def get(self, app_id: str) -> Optional[StoredApp]:
        for app in await self.load():
            if app.id == app_id or (app.app_id and app.app_id == app_id):
                return app
        return None

    async def cache_remote(self, payload: Any) -> List[StoredApp]:
        """Replace console apps with *payload*, keeping hand-added ones."""
        remote = normalize_apps(payload)
        remote_ids = {a.id for a in remote}
        local = [a for a in await self.load() if a.app_key and a.id not in remote_ids]
        apps = remote + local
        await self.save(apps)
        logger.info(f"[APPS] Cached {len(remote)} apps from instance")
        return apps

    async def fetch_remote(self, session) -> List[StoredApp]:
        """Refetch the console app list with the session's bearer token.

        Raises:
            SessionExpiredError: no access token, or the instance rejected it.
            DifyAPIError: any other non-2xx or a network failure.
        """
        if not session.access_token:
            raise SessionExpiredError("Not signed in. Run `difychat login` first")

        url = f"{await session.get_api_prefix()}/apps"
        try:
            resp = await run_blocking(
                session.http.get,
                url,
                headers=session.auth_headers(),
                timeout=session.request_timeout,
            )
        except requests.RequestException as exc:
            raise DifyAPIError(0, f"Network error: {exc}", url=url) from exc

        if resp.status_code == 401:
            raise SessionExpiredError("Session expired. Run `difychat login` again")
        if not response_ok(resp):
            raise DifyAPIError(resp.status_code, error_message(resp), url=url)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise DifyAPIError(resp.status_code, "Response is not JSON", url=url) from exc
        return await self.cache_remote(payload)

    async def add_app(self, app_id: str, app_key: str, api_url: str = DEFAULT_API_URL) -> StoredApp:
        """Add an app entered by hand.

        Raises:
            ValueError: *app_id* or *app_key* missing.
        """
        if not app_id or not app_key:
            raise ValueError("Please fill in all required fields")

        now = time.time()
        app = StoredApp(
            id=str(int(now * 1000)),
            name=app_id,
            app_id=app_id,
            app_key=app_key,
            api_url=(api_url or DEFAULT_API_URL).rstrip("/"),
            created_at=now,
        )
        apps = await self.load()
        apps.append(app)
        await self.save(apps)
        await self.store.set_item(StorageKeys.HAS_ONBOARDED, "true")
        logger.info(f"[APPS] Added app {app.app_id} ({app.id})")
        return app

    async def delete(self, app_id: str) -> bool:
        apps = await self.load()
        kept = [a for a in apps if a.id != app_id]
        if len(kept) == len(apps):
            return False
        await self.save(kept)
        logger.info(f"[APPS] Deleted app {app_id}")
        return True
