from __future__ import annotations

import pytest

from shared.origin import get_domain_from_url, is_origin_allowed
from shared.models import BotConfig, RequestContext


@pytest.mark.parametrize(
    "url, domain",
    [
        ("https://www.example.com/path", "example.com"),
        ("http://app.shop.example.com:8080", "example.com"),
        ("example.com", "example.com"),
        ("localhost:3000", "localhost"),
        ("", ""),
    ],
)
def test_get_domain_from_url(url, domain):
    assert get_domain_from_url(url) == domain


def test_same_domain_traffic_bypasses_allowed_origins():
    bot = BotConfig(id="b", allowed_origins=["https://partner.io"])
    ctx = RequestContext(origin="https://chat.example.com", host="api.example.com")
    assert is_origin_allowed(bot, ctx)


def test_empty_allowed_origins_accepts_everything():
    bot = BotConfig(id="b")
    assert is_origin_allowed(bot, RequestContext(origin="https://evil.test", host="api.example.com"))


def test_listed_origin_is_accepted_and_others_rejected():
    bot = BotConfig(id="b", allowed_origins=["https://partner.io"])
    assert is_origin_allowed(bot, RequestContext(origin="https://partner.io", host="api.example.com"))
    assert not is_origin_allowed(bot, RequestContext(origin="https://evil.test", host="api.example.com"))


def test_referer_is_used_when_origin_is_missing():
    bot = BotConfig(id="b", allowed_origins=["https://partner.io"])
    ctx = RequestContext(referer="https://evil.test/page", host="api.example.com")
    assert not is_origin_allowed(bot, ctx)
