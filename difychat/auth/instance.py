"""
Instance Resolver
=================
Maps an instance type (Dify Cloud vs. self-hosted) to the URLs the rest of
the client addresses.

Rules:
    - ``cloud`` always resolves to the resolver's cloud URL
      (``https://cloud.dify.ai`` unless configured); any stored custom
      domain is ignored.
    - A landing URL on the cloud URL's hostname is ``cloud``, anything
      else ``custom``.
    - ``custom`` needs a user-supplied domain; a bare host gets ``https://``.
    - REST endpoints live under ``{instance_url}/console/api``.

Usage::

    resolver = InstanceResolver()
    inst = resolver.resolve(InstanceType.CUSTOM, "dify.example.com")
    inst.api_prefix   # 'https://dify.example.com/console/api'
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


CLOUD_INSTANCE_URL = "https://cloud.dify.ai"
CLOUD_HOSTNAME = "cloud.dify.ai"
CONSOLE_API_PATH = "/console/api"
SIGN_IN_PATH = "/signin"


class InstanceType(str, Enum):
    CLOUD = "cloud"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Optional[str], default: "InstanceType" = None) -> "InstanceType":
        """Lenient parse of a stored value; unknown/empty → *default* (cloud)."""
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return default or cls.CLOUD


@dataclass(frozen=True)
class Instance:
    """A resolved Dify deployment."""
    type: InstanceType
    url: str
    api_prefix: str
    public_api_prefix: str

    @property
    def sign_in_url(self) -> str:
        return sign_in_url(self.url)


def normalize_domain(domain: str) -> str:
    """Turn user input like ``dify.example.com/`` into ``https://dify.example.com``.

    Raises:
        ValueError: empty input, or nothing that looks like a host.
    """
    value = (domain or "").strip()
    if not value:
        raise ValueError("Please enter your Dify instance domain")

    if not value.startswith(("http://", "https://")):
        value = f"https://{value}"
    value = value.rstrip("/")

    parsed = urlparse(value)
    if not parsed.hostname:
        raise ValueError(f"Invalid instance domain: {domain!r}")
    return value


def origin_of(url: str) -> str:
    """``scheme://host[:port]`` of *url*, or '' if it has none."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return ""
    return f"{parsed.scheme}://{parsed.netloc}"


def instance_type_for_url(url: str, cloud_hostname: str = CLOUD_HOSTNAME) -> InstanceType:
    """Cloud iff the URL's hostname is *cloud_hostname*."""
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        host = ""
    return InstanceType.CLOUD if host == cloud_hostname.lower() else InstanceType.CUSTOM


def api_prefix_for(instance_url: str) -> str:
    return f"{instance_url.rstrip('/')}{CONSOLE_API_PATH}"


def sign_in_url(instance_url: str) -> str:
    return f"{(instance_url or CLOUD_INSTANCE_URL).rstrip('/')}{SIGN_IN_PATH}"


class InstanceResolver:
    """Resolves instance type + domain into an ``Instance``."""

    def __init__(self, cloud_url: str = CLOUD_INSTANCE_URL):
        self.cloud_url = cloud_url.rstrip("/")
        self.cloud_hostname = urlparse(self.cloud_url).hostname or CLOUD_HOSTNAME

    def type_for_url(self, url: str) -> InstanceType:
        return instance_type_for_url(url, self.cloud_hostname)

    def resolve(
        self, instance_type, domain: Optional[str] = None
    ) -> Instance:
        """
        Args:
            instance_type: ``InstanceType`` or its string value.
            domain:        Required for ``custom``; ignored for ``cloud``.

        Raises:
            ValueError: ``custom`` without a usable domain.
        """
        itype = InstanceType.parse(instance_type)
        if itype is InstanceType.CLOUD:
            if domain:
                logger.debug("[INSTANCE] Cloud selected — ignoring custom domain")
            url = self.cloud_url
        else:
            url = normalize_domain(domain or "")

        prefix = api_prefix_for(url)
        return Instance(type=itype, url=url, api_prefix=prefix, public_api_prefix=prefix)

    def default_api_prefix(self, instance_type, instance_url: str = "") -> str:
        """Prefix used when none was set explicitly."""
        itype = InstanceType.parse(instance_type)
        if itype is InstanceType.CUSTOM and instance_url:
            return api_prefix_for(instance_url)
        return api_prefix_for(self.cloud_url)
