"""
Credential Store
================
Durable key-value persistence for tokens, instance metadata and cookies.

Every value is a string.  The ``SessionManager`` is the only component that
writes the session keys (``StorageKeys.SESSION_KEYS``); everything else goes
through its accessors.

Two implementations:
    - ``JSONFileStore`` — one JSON object on disk, written atomically
    - ``MemoryStore``   — in-process dict (tests, throwaway sessions)

Usage::

    store = JSONFileStore("~/.difychat/credentials.json")
    await store.set_item(StorageKeys.AUTH_TOKEN, token)
    token = await store.get_item(StorageKeys.AUTH_TOKEN)

Security:
    - Values are never logged, only key names.
    - The file is created with mode 0600.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from functools import partial
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..errors import StoreError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Key space
# ---------------------------------------------------------------------------

class StorageKeys:
    """Fixed key names shared with the hosted login page and the app."""

    AUTH_TOKEN = "auth_token"
    REFRESH_TOKEN = "refresh_token"
    INSTANCE_URL = "instance_url"
    INSTANCE_TYPE = "instance_type"
    API_PREFIX = "api_prefix"
    PUBLIC_API_PREFIX = "public_api_prefix"
    COOKIES = "auth_cookies"
    BASE_URL = "base_url"
    IS_AUTHENTICATED = "isAuthenticated"
    APPS = "apps"
    CONVERSATIONS = "conversationStore"
    HAS_ONBOARDED = "hasOnboarded"

    SESSION_KEYS = (
        AUTH_TOKEN,
        REFRESH_TOKEN,
        INSTANCE_URL,
        INSTANCE_TYPE,
        API_PREFIX,
        PUBLIC_API_PREFIX,
        COOKIES,
        BASE_URL,
    )

    # Cleared on logout: session keys + cached apps + the gate flag
    LOGOUT_KEYS = SESSION_KEYS + (APPS, IS_AUTHENTICATED)


# ---------------------------------------------------------------------------
# Abstract store
# ---------------------------------------------------------------------------

class CredentialStore(ABC):
    """Async string key-value store."""

    @abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        """Return the value for *key*, or None if absent."""
        ...

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def multi_remove(self, keys: Iterable[str]) -> None:
        """Remove every key in *keys*.  Missing keys are not an error."""
        ...

    async def remove_item(self, key: str) -> None:
        await self.multi_remove([key])

    async def multi_get(self, keys: Iterable[str]) -> List[Optional[str]]:
        """Read several keys concurrently, preserving order."""
        return list(await asyncio.gather(*(self.get_item(k) for k in keys)))


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class MemoryStore(CredentialStore):
    """Dict-backed store.

    ``fail_reads`` / ``fail_writes`` make every read or write raise
    ``StoreError``; tests flip them to exercise degraded paths.
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self.fail_reads = False
        self.fail_writes = False

    async def get_item(self, key: str) -> Optional[str]:
        if self.fail_reads:
            raise StoreError(f"read failed: {key}")
        return self._data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise StoreError(f"write failed: {key}")
        if value is None:
            raise StoreError(f"refusing to store None for {key}")
        self._data[key] = str(value)

    async def multi_remove(self, keys: Iterable[str]) -> None:
        if self.fail_writes:
            raise StoreError("remove failed")
        for key in keys:
            self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


# ---------------------------------------------------------------------------
# JSON file store
# ---------------------------------------------------------------------------

_DEFAULT_STORE_PATH = "~/.difychat/credentials.json"


class JSONFileStore(CredentialStore):
    """Persists all keys as one JSON object.

    File I/O runs in the default executor so callers on the event loop
    never block.  Writes go to a temp file that replaces the original.
    """

    def __init__(self, path: str = _DEFAULT_STORE_PATH):
        self.path = Path(os.path.expanduser(path))
        self._lock = threading.Lock()

    # ── Public API ────────────────────────────────────────────────

    async def get_item(self, key: str) -> Optional[str]:
        data = await self._run(self._read)
        return data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        if value is None:
            raise StoreError(f"refusing to store None for {key}")
        await self._run(partial(self._update, {key: str(value)}, ()))

    async def multi_remove(self, keys: Iterable[str]) -> None:
        await self._run(partial(self._update, {}, tuple(keys)))

    # ── Internal ──────────────────────────────────────────────────

    async def _run(self, func):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)

    def _read(self) -> Dict[str, str]:
        with self._lock:
            return self._load_unlocked()

    def _load_unlocked(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning(f"[STORE] Corrupt store file {self.path}: {exc} — treating as empty")
            return {}
        except OSError as exc:
            raise StoreError(f"cannot read {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            logger.warning(f"[STORE] Unexpected store layout in {self.path} — treating as empty")
            return {}
        return {str(k): str(v) for k, v in data.items() if v is not None}

    def _update(self, updates: Dict[str, str], removals: tuple) -> None:
        with self._lock:
            data = self._load_unlocked()
            if not updates and not any(k in data for k in removals):
                return
            data.update(updates)
            for key in removals:
                data.pop(key, None)
            self._write_unlocked(data)

    def _write_unlocked(self, data: Dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".credentials-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, indent=2, sort_keys=True)
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StoreError(f"cannot write {self.path}: {exc}") from exc
        logger.debug(f"[STORE] Saved {len(data)} keys to {self.path}")
