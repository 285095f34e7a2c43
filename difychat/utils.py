"""
Utility Functions
HTTP session setup, executor bridging, and URL / cookie helpers.
"""

import asyncio
import logging
import platform
from functools import partial
from typing import Any, Callable, Dict, Iterable, Optional
from urllib.parse import parse_qs, urlparse

import requests

logger = logging.getLogger(__name__)


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)


def _detect_platform() -> str:
    system = platform.system()
    if system == "Darwin":
        return "macOS"
    return system or "Linux"


def create_http_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    """Create a requests session with JSON defaults for the Dify APIs."""
    session = requests.Session()
    session.headers.update({
        'User-Agent': f"{user_agent} difychat ({_detect_platform()})",
        'Accept': 'application/json',
        'Content-Type': 'application/json',
    })
    return session


async def run_blocking(func: Callable, *args, **kwargs) -> Any:
    """Run a blocking call (requests, file I/O) in the default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, partial(func, *args, **kwargs))


def response_ok(response: requests.Response) -> bool:
    return 200 <= response.status_code < 300


def error_message(response: requests.Response) -> str:
    """Best-effort ``message`` from a Dify error body."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP error! status: {response.status_code}"


def query_param(url: str, name: str) -> Optional[str]:
    """First value of query parameter *name*, or None."""
    try:
        values = parse_qs(urlparse(url).query).get(name)
    except ValueError:
        return None
    return values[0] if values else None


def path_matches(url: str, path: str) -> bool:
    """True if *url*'s path is exactly *path*.

    Falls back to substring containment when the URL cannot be parsed or
    carries no scheme/host (relative / partial URLs from some browsers).
    """
    try:
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("not an absolute URL")
        return parsed.path == path
    except ValueError:
        return path in (url or "")


def cookie_header(cookies: Iterable[Dict[str, Any]], host: Optional[str] = None) -> str:
    """Build a ``Cookie`` header value from Playwright cookie dicts.

    If *host* is given, only cookies whose domain matches it are kept.
    """
    pairs = []
    for cookie in cookies:
        name = cookie.get("name")
        if not name:
            continue
        if host:
            domain = (cookie.get("domain") or "").lstrip(".").lower()
            if domain and not (host == domain or host.endswith("." + domain)):
                continue
        pairs.append(f"{name}={cookie.get('value', '')}")
    return "; ".join(pairs)
