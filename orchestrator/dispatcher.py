"""
Chat Dispatcher — per-turn flow router.

Responsibility:
- Admit a request (bot lookup, origin check, protocol check) before any byte
- Decide clarity -> detection -> per-intent routing
- Stream framed output from the selected flows, in detection order
- Translate fatal errors into one apology frame and always close the stream

Prohibitions:
- No cross-request state
- No direct LLM calls (flows and the intent layer own those)
- No procedure decoding (sandbox owns it)
"""

import asyncio
import logging
import os
import uuid
from typing import Any, AsyncIterator, Iterable

from pydantic import BaseModel, Field

from flows.ask_params import AskParamsFlow
from flows.general_question import GeneralQuestionFlow
from flows.model_response import ModelResponseFlow
from flows.streaming import format_chat_history
from intent.clarity import IntentClarityChecker
from intent.detector import IntentDetector
from intent.required_params import resolve_required_params
from models.selector import ModelSelector
from observability.logger import Observability
from orchestrator.intent_handler import IntentHandlerFlow, env_flag
from sandbox.executor import SandboxExecutor
from shared.errors import (
    BotNotFoundError,
    HandlerConfigError,
    MissingHandlerError,
    OriginForbiddenError,
    ProtocolViolationError,
)
from shared.framing import frame_json, frame_message
from shared.models import (
    BotConfig,
    ConversationTurn,
    DetectedIntent,
    IntentDetectionCode,
    IntentDetectionResult,
    RequestContext,
)
from shared.origin import is_origin_allowed

logger = logging.getLogger(__name__)

BOT_NOT_FOUND_MESSAGE = "Bot not found!"
STRICT_REFUSAL_MESSAGE = "Sorry I can't answer this question"
DEFAULT_CLARIFY_QUESTION = "Could you please clarify your question?"
APOLOGY_MESSAGE = "Encountered an error when processing chat."
SYSTEM_TURN_VIOLATION = "The most recent message is from system instead of user"


def apology_frame(error: Exception, expose_error_details: bool = False) -> str:
    """The single frame a fatal error turns into."""
    message = APOLOGY_MESSAGE
    if expose_error_details:
        message = f"{message} Error: {error}"
    return frame_message(message)


class ChatTurn(BaseModel):
    """An admitted request: everything ``stream`` needs, resolved up front."""
    model_config = {"frozen": True}

    bot: BotConfig
    messages: list[ConversationTurn] = Field(default_factory=list)
    request_context: RequestContext = Field(default_factory=RequestContext)
    trace_id: str = Field(default_factory=lambda: str(uuid.uuid4()))


class ChatDispatcher:
    """Stateless router from a chat turn to framed output."""

    def __init__(
        self,
        bot_store: Any,
        model_selector: ModelSelector,
        sandbox_executor: SandboxExecutor,
        clarity_checker: IntentClarityChecker | None = None,
        detector: IntentDetector | None = None,
        general_question_flow: GeneralQuestionFlow | None = None,
        ask_params_flow: AskParamsFlow | None = None,
        intent_handler_flow: IntentHandlerFlow | None = None,
        expose_error_details: bool | None = None,
    ):
        self.bot_store = bot_store
        self.model_selector = model_selector
        self.sandbox_executor = sandbox_executor
        self.clarity_checker = clarity_checker or IntentClarityChecker(model_selector)
        self.detector = detector or IntentDetector(model_selector)
        self.general_question_flow = general_question_flow or GeneralQuestionFlow(model_selector)
        self.ask_params_flow = ask_params_flow or AskParamsFlow(model_selector)
        self.intent_handler_flow = intent_handler_flow or IntentHandlerFlow(
            sandbox_executor, ModelResponseFlow(model_selector)
        )
        self.expose_error_details = (
            env_flag("CHAT_EXPOSE_ERROR_DETAILS") if expose_error_details is None else expose_error_details
        )

    # ─── Entry points ─────────────────────────────────────────

    async def admit(
        self,
        bot_id: str,
        messages: Iterable[ConversationTurn | dict],
        request_context: RequestContext | None = None,
    ) -> ChatTurn:
        """
        Resolve the bot and reject the request before any byte is written.

        Raises BotNotFoundError, OriginForbiddenError or ProtocolViolationError,
        and HandlerConfigError when a stored handler row is corrupt.
        """
        request_context = request_context or RequestContext()
        turns = [
            turn if isinstance(turn, ConversationTurn) else ConversationTurn.model_validate(turn)
            for turn in messages
        ]

        bot = await asyncio.to_thread(self.bot_store.load_bot_with_enabled_intents, bot_id)
        if bot is None:
            logger.warning("Bot not found: %s", bot_id)
            raise BotNotFoundError(bot_id)

        if not is_origin_allowed(bot, request_context):
            Observability(bot.id).log_event(
                "origin_forbidden",
                {"bot_id": bot.id, "origin": request_context.requester_origin, "host": request_context.host},
                level="WARNING",
            )
            raise OriginForbiddenError(bot.id, request_context.requester_origin)

        if turns and turns[-1].role == "system":
            raise ProtocolViolationError(SYSTEM_TURN_VIOLATION)

        return ChatTurn(bot=bot, messages=turns, request_context=request_context)

    async def stream(self, turn: ChatTurn) -> AsyncIterator[str]:
        """Framed output for an admitted turn. Always ends normally."""
        bot = turn.bot
        obs = Observability(bot.id, trace_id=turn.trace_id)
        obs.log_event("chat_request", {"bot_id": bot.id, "turns": len(turn.messages)})

        if not turn.messages:
            yield frame_message(bot.greeting_message)
            if bot.quick_actions is not None:
                yield frame_json(bot.quick_actions.config)
            return

        failure_context: dict[str, Any] = {}
        try:
            chat_history = format_chat_history(turn.messages)
            user_input = turn.messages[-1].content
            detection = await self._classify(bot, chat_history, user_input, obs)
            obs.log_event(
                "intents_detected",
                {
                    "bot_id": bot.id,
                    "intents": [
                        {"code": item.code.value, "intent_name": item.intent_name} for item in detection.intents
                    ],
                },
            )
            for detected in detection.intents:
                failure_context = {"intent_name": detected.intent_name}
                async for chunk in self._route(detected, turn, chat_history, user_input, obs, failure_context):
                    yield chunk
        except Exception as e:
            logger.exception("Chat processing failed for bot %s", bot.id)
            obs.log_event(
                "chat_failure",
                {
                    "bot_id": bot.id,
                    "intent_name": failure_context.get("intent_name"),
                    "intent_id": failure_context.get("intent_id"),
                    "handler_id": failure_context.get("handler_id"),
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
                level="ERROR",
            )
            yield apology_frame(e, self.expose_error_details)

    async def process_chat(
        self,
        bot_id: str,
        messages: Iterable[ConversationTurn | dict],
        request_context: RequestContext | None = None,
    ) -> AsyncIterator[str]:
        """admit + stream. Unknown bots and corrupt bot config get a frame; other rejections propagate."""
        try:
            turn = await self.admit(bot_id, messages, request_context)
        except BotNotFoundError:
            yield frame_message(BOT_NOT_FOUND_MESSAGE)
            return
        except HandlerConfigError as e:
            logger.exception("Stored configuration for bot %s is invalid", bot_id)
            yield apology_frame(e, self.expose_error_details)
            return
        async for chunk in self.stream(turn):
            yield chunk

    # ─── Decision steps ───────────────────────────────────────

    async def _classify(
        self,
        bot: BotConfig,
        chat_history: str,
        user_input: str,
        obs: Observability,
    ) -> IntentDetectionResult:
        if not bot.enabled_intents:
            return IntentDetector.no_intent_configured(bot)

        if chat_history:
            clarity = await self.clarity_checker.check(bot.guidelines or "", chat_history, session_id=obs.session_id)
            if not clarity.is_intent_clear and bot.strict_intent_detection:
                logger.info("Intent unclear for bot %s under strict detection", bot.id)
                return IntentDetectionResult(
                    intents=[
                        DetectedIntent(
                            code=IntentDetectionCode.INTENT_UN_CLEAR,
                            question_to_user=clarity.question_to_user or DEFAULT_CLARIFY_QUESTION,
                            strict_intent_detection=True,
                        )
                    ]
                )

        return await self.detector.detect(bot, chat_history, user_input, session_id=obs.session_id)

    async def _route(
        self,
        detected: DetectedIntent,
        turn: ChatTurn,
        chat_history: str,
        user_input: str,
        obs: Observability,
        failure_context: dict[str, Any],
    ) -> AsyncIterator[str]:
        bot = turn.bot

        if detected.code == IntentDetectionCode.INTENT_UN_CLEAR:
            yield frame_message(detected.question_to_user or DEFAULT_CLARIFY_QUESTION)
            return

        if detected.code in (IntentDetectionCode.INTENT_CONFIG_NOT_FOUND, IntentDetectionCode.NO_INTENT_IS_CONFIGURED):
            strict = (
                detected.strict_intent_detection
                if detected.strict_intent_detection is not None
                else bot.strict_intent_detection
            )
            if strict:
                yield frame_message(STRICT_REFUSAL_MESSAGE)
                return
            async for chunk in self.general_question_flow.run(turn.messages, bot):
                yield chunk
            return

        check = resolve_required_params(bot, detected)
        failure_context["intent_id"] = check.intent.id
        failure_context["handler_id"] = check.handler.id if check.handler else None
        if check.handler is None:
            obs.log_event(
                "missing_handler",
                {"bot_id": bot.id, "intent_name": detected.intent_name, "intent_id": check.intent.id},
                level="ERROR",
            )
            raise MissingHandlerError(detected.intent_name)

        if check.has_missing_required_params:
            obs.log_event(
                "missing_required_params",
                {"bot_id": bot.id, "intent_name": detected.intent_name, "missing_fields": check.missing_fields},
            )
            async for chunk in self.ask_params_flow.run(user_input, chat_history, check.missing_fields_text):
                yield chunk
            return

        async for chunk in self.intent_handler_flow.run(
            check.handler,
            detected,
            bot,
            user_input,
            chat_history,
            turn.request_context,
            obs,
        ):
            yield chunk
