"""
Shared Pydantic models for all layers.
All contexts are immutable (frozen) after creation.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from shared.errors import HandlerConfigError


# ─── Conversation ──────────────────────────────────────────────

class ConversationTurn(BaseModel):
    """One caller-supplied turn of dialogue history."""
    model_config = {"frozen": True}

    role: Literal["system", "user", "assistant"]
    content: str


class RequestContext(BaseModel):
    """Transport-neutral snapshot of the inbound chat request."""
    model_config = {"frozen": True}

    origin: str = ""
    referer: str = ""
    host: str = ""
    method: str = "POST"
    url: str = ""
    client_ip: str = ""
    user_agent: str = ""
    headers: dict[str, str] = Field(default_factory=dict)

    @property
    def requester_origin(self) -> str:
        """Origin header, falling back to Referer like browsers without CORS do."""
        return self.origin or self.referer or ""


# ─── Bot Configuration ─────────────────────────────────────────

class HandlerType(str, Enum):
    NONFUNCTIONAL = "NONFUNCTIONAL"
    FUNCTIONAL = "FUNCTIONAL"
    MODELRESPONSE = "MODELRESPONSE"


class HandlerConfig(BaseModel):
    """Strategy bound to an intent.

    NONFUNCTIONAL/FUNCTIONAL carry ``content`` (fixed text / encoded procedure);
    MODELRESPONSE carries ``guidelines`` only.
    """
    model_config = {"frozen": True}

    id: str
    type: HandlerType
    content: str | None = None
    guidelines: str | None = None

    @model_validator(mode="after")
    def _check_type_payload(self) -> "HandlerConfig":
        if self.type in (HandlerType.NONFUNCTIONAL, HandlerType.FUNCTIONAL):
            if not self.content:
                raise HandlerConfigError(f"{self.type.value} handler '{self.id}' requires content")
            if self.guidelines:
                raise HandlerConfigError(f"{self.type.value} handler '{self.id}' must not define guidelines")
        elif self.content:
            raise HandlerConfigError(f"MODELRESPONSE handler '{self.id}' must not define content")
        return self


class IntentConfig(BaseModel):
    model_config = {"frozen": True}

    id: str
    name: str
    description: str = ""
    required_fields: str | None = Field(
        default=None,
        description="Comma-separated field names, e.g. 'cityName, checkInDate'",
    )
    is_enabled: bool = True
    handler: HandlerConfig | None = None


class QuickActionConfig(BaseModel):
    model_config = {"frozen": True}

    id: str
    config: str = Field(..., description="Opaque JSON text forwarded verbatim to the client")


class BotConfig(BaseModel):
    """Bot configuration loaded once per request. Read-only within the flow."""
    model_config = {"frozen": True}

    id: str
    name: str = ""
    greeting_message: str = ""
    guidelines: str = ""
    strict_intent_detection: bool = False
    allowed_origins: list[str] = Field(default_factory=list)
    intents: list[IntentConfig] = Field(default_factory=list)
    quick_actions: QuickActionConfig | None = None

    @property
    def enabled_intents(self) -> list[IntentConfig]:
        return [intent for intent in self.intents if intent.is_enabled]


# ─── Intent Layer ──────────────────────────────────────────────

class IntentDetectionCode(str, Enum):
    INTENT_FOUND = "INTENT_FOUND"
    INTENT_UN_CLEAR = "INTENT_UN_CLEAR"
    INTENT_CONFIG_NOT_FOUND = "INTENT_CONFIG_NOT_FOUND"
    NO_INTENT_IS_CONFIGURED = "NO_INTENT_IS_CONFIGURED"


class DetectedIntent(BaseModel):
    """One entry of an intent detection result. Never persisted."""
    model_config = {"frozen": True}

    code: IntentDetectionCode
    intent_name: str | None = None
    intent_summary: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    question_to_user: str = ""
    strict_intent_detection: bool | None = None


class IntentDetectionResult(BaseModel):
    model_config = {"frozen": True}

    intents: list[DetectedIntent] = Field(default_factory=list)


class ClarityResult(BaseModel):
    """Structured output of the clarity check (wire keys are camelCase)."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    is_intent_clear: bool = Field(..., alias="isIntentClear")
    question_to_user: str = Field(..., alias="questionToUser")


class RequiredParamsCheck(BaseModel):
    model_config = {"frozen": True}

    intent: IntentConfig
    handler: HandlerConfig | None = None
    has_missing_required_params: bool = False
    missing_fields: list[str] = Field(default_factory=list)

    @property
    def missing_fields_text(self) -> str:
        return ", ".join(self.missing_fields)


# ─── Model Layer (Policy) ──────────────────────────────────────

class ModelPolicy(BaseModel):
    """Configuration for Model Layer execution."""
    model_config = {"frozen": True}
    model_name: str
    temperature: float = 0.0
    timeout_seconds: float = 30.0
    max_retries: int = 3
    json_mode: bool = True


# ─── Sandbox ───────────────────────────────────────────────────

class SandboxContext(BaseModel):
    """Data half of the capability context handed to a sandboxed procedure."""
    model_config = {"frozen": True}

    params: dict[str, Any] = Field(default_factory=dict)
    request: dict[str, Any] = Field(default_factory=dict)


class SandboxEvent(BaseModel):
    model_config = {"frozen": True}

    kind: Literal["message", "result"]
    text: str = ""
    value: Any = None


# ─── Framing ───────────────────────────────────────────────────

class Frame(BaseModel):
    model_config = {"frozen": True}

    kind: Literal["message", "json"]
    text: str
