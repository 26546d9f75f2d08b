"""Required-parameter resolution for detected intents."""

from __future__ import annotations

import logging
import re

from shared.errors import IntentConfigNotFoundError
from shared.models import BotConfig, DetectedIntent, RequiredParamsCheck

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def parse_required_fields(required_fields: str | None) -> list[str]:
    """'cityName, checkIn ,' -> ['cityName', 'checkIn']"""
    if not required_fields:
        return []
    normalized = _WHITESPACE.sub("", required_fields)
    if normalized.endswith(","):
        normalized = normalized[:-1]
    return [field for field in normalized.split(",") if field]


def resolve_required_params(bot: BotConfig, detected: DetectedIntent) -> RequiredParamsCheck:
    """Find which configured required fields the detected parameters leave unfilled."""
    intent_config = next((intent for intent in bot.intents if intent.name == detected.intent_name), None)
    if intent_config is None:
        logger.error("intent: %s not found in bot %s intents", detected.intent_name, bot.id)
        raise IntentConfigNotFoundError(detected.intent_name)

    required = parse_required_fields(intent_config.required_fields)
    if not required:
        return RequiredParamsCheck(intent=intent_config, handler=intent_config.handler)

    parameters = detected.parameters or {}
    missing = [field for field in required if not parameters.get(field)]
    return RequiredParamsCheck(
        intent=intent_config,
        handler=intent_config.handler,
        has_missing_required_params=bool(missing),
        missing_fields=missing,
    )
