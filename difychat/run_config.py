"""
Unified Run Configuration
=========================
Single source of truth for client defaults and runtime limits.

Every module (CLI, session manager, login flow, auth gate, app client)
reads from this object.  Environment variables and CLI flags populate it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .auth.instance import CLOUD_INSTANCE_URL
from .utils import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical defaults: the ONLY place these numbers live
# ---------------------------------------------------------------------------
_DEFAULTS = {
    "store_path": "~/.difychat/credentials.json",
    "cloud_url": CLOUD_INSTANCE_URL,
    "poll_interval": 1.0,            # seconds between auth-gate checks
    "request_timeout": 30,           # seconds per HTTP call
    "login_timeout_seconds": 600,    # how long the login browser stays open
    "headless": False,               # the user has to see the sign-in page
    "user": "default",               # Dify end-user id for chat calls
    "user_agent": DEFAULT_USER_AGENT,
}

_ENV_PREFIX = "DIFYCHAT_"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ClientConfig:
    """
    Configuration consumed by every difychat subsystem.

    Populate via:
      - ``ClientConfig()``                  → all defaults
      - ``ClientConfig(poll_interval=0.1)`` → override one value
      - ``ClientConfig.from_env()``         → ``DIFYCHAT_*`` env vars
      - ``ClientConfig.from_cli_args(ns)``  → from argparse Namespace
    """

    store_path: str = _DEFAULTS["store_path"]
    cloud_url: str = _DEFAULTS["cloud_url"]
    poll_interval: float = _DEFAULTS["poll_interval"]
    request_timeout: int = _DEFAULTS["request_timeout"]
    login_timeout_seconds: int = _DEFAULTS["login_timeout_seconds"]
    headless: bool = _DEFAULTS["headless"]
    user: str = _DEFAULTS["user"]
    user_agent: str = _DEFAULTS["user_agent"]

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "ClientConfig":
        """Build config from ``DIFYCHAT_*`` variables.  Bad numbers are ignored."""
        env = os.environ if environ is None else environ
        cfg = cls()

        def get(name: str) -> Optional[str]:
            value = env.get(_ENV_PREFIX + name.upper())
            return value if value not in (None, "") else None

        if get("store_path"):
            cfg.store_path = get("store_path")
        if get("cloud_url"):
            cfg.cloud_url = get("cloud_url").rstrip("/")
        if get("user"):
            cfg.user = get("user")
        if get("headless"):
            cfg.headless = _env_bool(get("headless"))

        for name, cast in (
            ("poll_interval", float),
            ("request_timeout", int),
            ("login_timeout_seconds", int),
        ):
            raw = get(name)
            if raw is None:
                continue
            try:
                setattr(cfg, name, cast(raw))
            except ValueError:
                logger.warning(f"[CONFIG] Ignoring invalid {_ENV_PREFIX}{name.upper()}={raw!r}")
        return cfg

    @classmethod
    def from_cli_args(cls, args, base: Optional["ClientConfig"] = None) -> "ClientConfig":
        """Overlay argparse values (``__main__.py``) on *base* (default: env)."""
        cfg = base or cls.from_env()
        if getattr(args, "store", None):
            cfg.store_path = args.store
        if getattr(args, "headless", False):
            cfg.headless = True
        if getattr(args, "timeout", None):
            cfg.request_timeout = args.timeout
        if getattr(args, "user", None):
            cfg.user = args.user
        return cfg

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self) -> None:
        """Emit a structured summary to the logger."""
        logger.info("=" * 60)
        logger.info("DIFYCHAT CONFIG")
        logger.info("=" * 60)
        logger.info(f"  Store:            {self.store_path}")
        logger.info(f"  Cloud URL:        {self.cloud_url}")
        logger.info(f"  Poll Interval:    {self.poll_interval}s")
        logger.info(f"  Request Timeout:  {self.request_timeout}s")
        logger.info(f"  Login Timeout:    {self.login_timeout_seconds}s")
        logger.info(f"  Headless Login:   {self.headless}")
        logger.info(f"  Chat User:        {self.user}")
        logger.info("=" * 60)
