"""
Intent Clarity Checker — is the latest user turn actionable?

Responsibility:
- One non-streaming JSON call per chat turn
- Return {isIntentClear, questionToUser}; never ask for intent parameters
- Unusable model output is an error (ClarityCheckError), never an empty verdict
"""

import logging
import os

from pydantic import ValidationError

from models.selector import ModelSelector
from shared.errors import ClarityCheckError
from shared.models import ClarityResult, ModelPolicy

logger = logging.getLogger(__name__)


class IntentClarityChecker:
    """Ask the generation service whether the user's intent is clear."""

    def __init__(self, model_selector: ModelSelector, model_name: str | None = None):
        self.model_selector = model_selector
        intent_timeout_seconds = float(os.getenv("INTENT_MODEL_TIMEOUT_SECONDS", "20"))
        intent_max_retries = int(os.getenv("INTENT_MODEL_MAX_RETRIES", "2"))
        resolved_model = (model_name or os.getenv("INTENT_MODEL_NAME", "llama3.1:8b")).strip() or "llama3.1:8b"
        self.policy = ModelPolicy(
            model_name=resolved_model,
            temperature=0.0,
            timeout_seconds=max(1.0, intent_timeout_seconds),
            max_retries=max(1, intent_max_retries),
            json_mode=True,
        )

    async def check(self, bot_guidelines: str, chat_history: str, session_id: str | None = None) -> ClarityResult:
        messages = [{"role": "system", "content": self.build_prompt(bot_guidelines, chat_history)}]
        try:
            payload = await self.model_selector.generate(
                messages=messages,
                policy=self.policy,
                session_id=session_id,
            )
        except ValueError as e:
            logger.error("Intent clarity response parse failed: %s", e)
            raise ClarityCheckError(f"Intent clarity failed: {e}") from e

        if not isinstance(payload, dict):
            logger.error("Intent clarity returned non-object payload: %r", payload)
            raise ClarityCheckError("Intent clarity failed: response is not a JSON object")

        try:
            result = ClarityResult.model_validate(payload)
        except ValidationError as e:
            logger.error("Intent clarity payload invalid: %s", payload)
            raise ClarityCheckError("Intent clarity failed: missing isIntentClear/questionToUser") from e

        if result.is_intent_clear and result.question_to_user:
            result = result.model_copy(update={"question_to_user": ""})
        return result

    def build_prompt(self, bot_guidelines: str, chat_history: str) -> str:
        guidelines = (bot_guidelines or "").strip() or "None"
        return f"""===============
Context:
  Chat history:
{chat_history}
===============
Global Guidelines:
  {guidelines}
===============
Guidelines:
  1. The "Chat history" in "Context" includes all previous exchanges between the user and the system.
  2. Review the "Chat history" carefully and decide whether the user's intention is clear.
  3. Return ONLY a JSON object in the following format:
     {{
       "isIntentClear": boolean,
       "questionToUser": string
     }}
  - A clear intent means the user expressed a specific request, need, question or action that can be understood.
    If the intent is clear, set "isIntentClear" to true and "questionToUser" to "".
  - An unclear intent is an ambiguous or incomplete question, a greeting, etc. Set "isIntentClear" to false and
    write in "questionToUser" a short reply that encourages the user to clarify what they want.
  - If the request is clear but only missing some details, the intent IS clear. Never ask the user to provide
    parameters or details of the intent.
==============="""
