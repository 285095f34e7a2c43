"""
Authentication Module
=====================
Session and login layer for Dify Cloud and self-hosted instances.

Architecture:
    - ``CredentialStore``     — durable key-value persistence (JSON file / memory)
    - ``InstanceResolver``    — cloud vs. self-hosted URLs and API prefixes
    - ``SessionManager``      — tokens, cookies, refresh, logout; publishes changes
    - ``LoginFlowController`` — turns the sign-in redirect into a session
    - ``BrowserLogin``        — Playwright window that feeds the controller
    - ``AuthGate``            — picks the login or app surface from session state

Usage::

    from difychat.auth import JSONFileStore, SessionManager, AuthGate

    session = SessionManager(JSONFileStore())
    await session.initialize()
    async with AuthGate(session) as gate:
        ...
"""

from .credential_store import CredentialStore, JSONFileStore, MemoryStore, StorageKeys
from .instance import (
    CLOUD_INSTANCE_URL,
    Instance,
    InstanceResolver,
    InstanceType,
    normalize_domain,
)
from .session_manager import Session, SessionManager
from .login_manager import LoginFlowController, LoginResult, LoginState
from .auth_gate import AuthGate, Root

__all__ = [
    "CredentialStore",
    "JSONFileStore",
    "MemoryStore",
    "StorageKeys",
    "CLOUD_INSTANCE_URL",
    "Instance",
    "InstanceResolver",
    "InstanceType",
    "normalize_domain",
    "Session",
    "SessionManager",
    "LoginFlowController",
    "LoginResult",
    "LoginState",
    "AuthGate",
    "Root",
]
