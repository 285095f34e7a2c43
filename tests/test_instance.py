"""
Tests for instance resolution and the URL helpers.
"""

import pytest

from difychat.auth.instance import (
    InstanceResolver,
    InstanceType,
    instance_type_for_url,
    normalize_domain,
    origin_of,
    sign_in_url,
)
from difychat.utils import cookie_header, path_matches, query_param


@pytest.mark.parametrize("raw,expected", [
    ("dify.example.com", "https://dify.example.com"),
    ("  dify.example.com/ ", "https://dify.example.com"),
    ("http://10.0.0.5:8080", "http://10.0.0.5:8080"),
    ("https://dify.example.com/", "https://dify.example.com"),
])
def test_normalize_domain(raw, expected):
    assert normalize_domain(raw) == expected


@pytest.mark.parametrize("raw", ["", "   ", "https://"])
def test_normalize_domain_rejects(raw):
    with pytest.raises(ValueError):
        normalize_domain(raw)


def test_resolver_cloud_ignores_domain():
    inst = InstanceResolver().resolve(InstanceType.CLOUD, "dify.example.com")
    assert inst.url == "https://cloud.dify.ai"
    assert inst.api_prefix == "https://cloud.dify.ai/console/api"
    assert inst.sign_in_url == "https://cloud.dify.ai/signin"


def test_resolver_custom():
    inst = InstanceResolver().resolve("custom", "dify.example.com")
    assert inst.type is InstanceType.CUSTOM
    assert inst.api_prefix == "https://dify.example.com/console/api"
    assert inst.public_api_prefix == inst.api_prefix


def test_resolver_custom_without_domain():
    with pytest.raises(ValueError):
        InstanceResolver().resolve(InstanceType.CUSTOM)


def test_default_api_prefix():
    resolver = InstanceResolver()
    assert resolver.default_api_prefix("cloud", "https://x") == "https://cloud.dify.ai/console/api"
    assert resolver.default_api_prefix("custom", "https://x") == "https://x/console/api"
    assert resolver.default_api_prefix("custom", "") == "https://cloud.dify.ai/console/api"


def test_instance_type_parse():
    assert InstanceType.parse("CUSTOM") is InstanceType.CUSTOM
    assert InstanceType.parse(None) is InstanceType.CLOUD
    assert InstanceType.parse("bogus") is InstanceType.CLOUD


def test_url_helpers():
    assert origin_of("https://cloud.dify.ai/apps?x=1") == "https://cloud.dify.ai"
    assert origin_of("/apps") == ""
    assert instance_type_for_url("https://cloud.dify.ai/apps") is InstanceType.CLOUD
    assert instance_type_for_url("https://dify.example.com/apps") is InstanceType.CUSTOM
    assert sign_in_url("") == "https://cloud.dify.ai/signin"


def test_resolver_with_configured_cloud_url():
    resolver = InstanceResolver("https://dify.internal.example/")
    assert resolver.cloud_url == "https://dify.internal.example"
    assert resolver.type_for_url("https://dify.internal.example/apps") is InstanceType.CLOUD
    assert resolver.type_for_url("https://cloud.dify.ai/apps") is InstanceType.CUSTOM
    inst = resolver.resolve(InstanceType.CLOUD)
    assert inst.api_prefix == "https://dify.internal.example/console/api"
    assert inst.sign_in_url == "https://dify.internal.example/signin"


def test_query_param():
    url = "https://cloud.dify.ai/apps?access_token=abc&refresh_token=def"
    assert query_param(url, "access_token") == "abc"
    assert query_param(url, "missing") is None


@pytest.mark.parametrize("url,expected", [
    ("https://cloud.dify.ai/apps", True),
    ("https://cloud.dify.ai/apps?access_token=abc", True),
    ("https://cloud.dify.ai/apps/123", False),
    ("https://cloud.dify.ai/signin", False),
    ("/apps?access_token=abc", True),
])
def test_path_matches(url, expected):
    assert path_matches(url, "/apps") is expected


def test_cookie_header_filters_by_host():
    cookies = [
        {"name": "sid", "value": "1", "domain": ".dify.ai"},
        {"name": "other", "value": "2", "domain": "example.com"},
        {"name": "", "value": "3"},
    ]
    assert cookie_header(cookies, "cloud.dify.ai") == "sid=1"
    assert cookie_header(cookies) == "sid=1; other=2"
