"""
Errors
======
Exception types raised by the session, login and app-client layers.

Session-integrity problems (expired tokens, failed refresh) are normally
resolved inside ``SessionManager`` by logging out; these exceptions are for
the failures a caller has to see.
"""

from __future__ import annotations

from typing import Optional


class DifyChatError(Exception):
    """Base class for every error raised by this package."""


class StoreError(DifyChatError):
    """A credential-store read or write failed."""


class LoginError(DifyChatError):
    """The browser login could not be completed (user may retry)."""


class SessionExpiredError(DifyChatError):
    """No usable access token; the user has to sign in again."""


class DifyAPIError(DifyChatError):
    """A Dify endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str = "", url: Optional[str] = None):
        self.status_code = status_code
        self.message = message or f"HTTP error! status: {status_code}"
        self.url = url
        super().__init__(self.message)
