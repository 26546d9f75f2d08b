"""Requester origin helpers for the per-bot allowed-origin check."""

from __future__ import annotations

import re

from shared.models import BotConfig, RequestContext

_DOMAIN_PATTERN = re.compile(
    r"^(?:https?://)?(?:[^/:]+\.)?([a-zA-Z0-9-]+\.[a-zA-Z]+|localhost|[0-9.]+)(?::\d+)?(?:/|$)"
)


def get_domain_from_url(url: str) -> str:
    """Registrable domain of a URL or host header ('' when unrecognised)."""
    match = _DOMAIN_PATTERN.match(url or "")
    return match.group(1) if match else ""


def is_same_domain(origin: str, host: str) -> bool:
    return get_domain_from_url(origin) == get_domain_from_url(host)


def is_origin_allowed(bot: BotConfig, request_context: RequestContext) -> bool:
    """Same-domain traffic always passes; otherwise honour the bot's allowed origins."""
    origin = request_context.requester_origin
    if is_same_domain(origin, request_context.host):
        return True
    if not bot.allowed_origins:
        return True
    return origin in bot.allowed_origins
