"""Error taxonomy for the chat flow engine."""

from __future__ import annotations


class ChatFlowError(Exception):
    """Base class for every error raised by the chat flow engine."""


class BotNotFoundError(ChatFlowError):
    def __init__(self, bot_id: str):
        super().__init__(f"Bot not found: {bot_id}")
        self.bot_id = bot_id


class OriginForbiddenError(ChatFlowError):
    """Requester origin is not in the bot's allowed origins."""

    def __init__(self, bot_id: str, origin: str):
        super().__init__(f"Traffic from origin '{origin}' is not allowed for bot {bot_id}")
        self.bot_id = bot_id
        self.origin = origin


class ProtocolViolationError(ChatFlowError):
    """Caller sent a history that breaks the chat protocol."""


class ClarityCheckError(ChatFlowError):
    """Generation service returned an unusable clarity verdict."""


class IntentDetectionError(ChatFlowError):
    """Generation service returned an unusable intent classification."""


class IntentConfigNotFoundError(ChatFlowError):
    def __init__(self, intent_name: str | None):
        super().__init__(f"intent: {intent_name} not found")
        self.intent_name = intent_name


class MissingHandlerError(ChatFlowError):
    def __init__(self, intent_name: str | None):
        super().__init__(f"No intent handler associated with intent: {intent_name}")
        self.intent_name = intent_name


class HandlerConfigError(ChatFlowError, ValueError):
    """HandlerConfig violates its type/content invariant.

    Subclasses ValueError so pydantic validators surface it as a validation error.
    """


class SandboxExecutionError(ChatFlowError):
    """A sandboxed handler procedure failed, timed out or was rejected."""
