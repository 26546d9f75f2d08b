"""
Intent Handler Flow — answer a fully-parameterised intent with its handler.

Dispatch by handler type:
- NONFUNCTIONAL -> fixed text
- FUNCTIONAL    -> sandboxed procedure (partial messages streamed as they come)
- MODELRESPONSE -> guided model answer

Sandbox failures are recovered here: one fallback frame, stream continues.
"""

import json
import logging
import os
from typing import AsyncIterator

from flows.model_response import ModelResponseFlow
from observability.logger import Observability
from sandbox.executor import SandboxExecutor, sandbox_request_snapshot
from shared.errors import SandboxExecutionError
from shared.framing import frame_message
from shared.models import (
    BotConfig,
    DetectedIntent,
    HandlerConfig,
    HandlerType,
    RequestContext,
    SandboxContext,
)

logger = logging.getLogger(__name__)

SANDBOX_FALLBACK_MESSAGE = "Something went wrong, please try again."


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _short_detail(error: Exception, limit: int = 200) -> str:
    detail = str(error).strip().splitlines()[0] if str(error).strip() else type(error).__name__
    return detail if len(detail) <= limit else detail[: limit - 3] + "..."


class IntentHandlerFlow:
    def __init__(
        self,
        sandbox_executor: SandboxExecutor,
        model_response_flow: ModelResponseFlow,
        expose_error_details: bool | None = None,
    ):
        self.sandbox_executor = sandbox_executor
        self.model_response_flow = model_response_flow
        self.expose_error_details = (
            env_flag("SANDBOX_EXPOSE_ERROR_DETAILS") if expose_error_details is None else expose_error_details
        )

    async def run(
        self,
        handler: HandlerConfig,
        detected: DetectedIntent,
        bot: BotConfig,
        user_input: str,
        chat_history: str,
        request_context: RequestContext | None,
        obs: Observability,
    ) -> AsyncIterator[str]:
        logger.info("Intent handler flow: intent=%s handler=%s type=%s", detected.intent_name, handler.id, handler.type.value)

        if handler.type == HandlerType.NONFUNCTIONAL:
            yield frame_message(handler.content or "")
            return

        if handler.type == HandlerType.MODELRESPONSE:
            async for chunk in self.model_response_flow.run(
                user_input, chat_history, bot.guidelines or "", handler.guidelines or ""
            ):
                yield chunk
            return

        context = SandboxContext(
            params=dict(detected.parameters),
            request=sandbox_request_snapshot(request_context),
        )
        async for chunk in self._run_functional(handler, detected, context, obs):
            yield chunk

    async def _run_functional(
        self,
        handler: HandlerConfig,
        detected: DetectedIntent,
        context: SandboxContext,
        obs: Observability,
    ) -> AsyncIterator[str]:
        meta = {"intent_name": detected.intent_name, "handler_id": handler.id}
        try:
            with obs.measure("sandbox_execution", meta):
                async for event in self.sandbox_executor.execute(handler.content or "", context):
                    if event.kind == "message":
                        yield frame_message(event.text)
                    elif event.value:
                        value = event.value if isinstance(event.value, str) else json.dumps(event.value, ensure_ascii=False)
                        yield frame_message(value)
        except SandboxExecutionError as e:
            logger.error("Sandbox execution failed for intent %s: %s", detected.intent_name, e)
            obs.log_event("sandbox_failure", {**meta, "error": str(e)}, level="ERROR")
            message = SANDBOX_FALLBACK_MESSAGE
            if self.expose_error_details:
                message = f"{message} (Error: {_short_detail(e)})"
            yield frame_message(message)
