"""
Intent Detector — LLM-powered classification against the bot's intent catalog.

Responsibility:
- Convert user input + chat history -> IntentDetectionResult
- Temperature = 0, JSON-only output
- Multiple simultaneous intents are a normal outcome
- Bots without enabled intents never reach the model (see no_intent_configured)
"""

import logging
import os
from typing import Any

from models.selector import ModelSelector
from shared.errors import IntentDetectionError
from shared.models import (
    BotConfig,
    DetectedIntent,
    IntentDetectionCode,
    IntentDetectionResult,
    ModelPolicy,
)

logger = logging.getLogger(__name__)

NOT_CONFIGURED_CATALOG = "INTENT NOT CONFIGURED."
NULL_INTENT_NAME = "NULL"
STRICT_NOT_FOUND_QUESTION = "I'm sorry, I'm not sure how to answer that."


class IntentDetector:
    """Classify the user's turn into zero, one or many configured intents."""

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

    @staticmethod
    def no_intent_configured(bot: BotConfig) -> IntentDetectionResult:
        """Synthetic result for bots with zero enabled intents."""
        return IntentDetectionResult(
            intents=[
                DetectedIntent(
                    code=IntentDetectionCode.NO_INTENT_IS_CONFIGURED,
                    strict_intent_detection=bot.strict_intent_detection,
                )
            ]
        )

    async def detect(
        self,
        bot: BotConfig,
        chat_history: str,
        user_input: str,
        session_id: str | None = None,
    ) -> IntentDetectionResult:
        messages = [
            {
                "role": "system",
                "content": self.build_prompt(self.render_catalog(bot), chat_history, user_input),
            }
        ]
        try:
            payload = await self.model_selector.generate(
                messages=messages,
                policy=self.policy,
                session_id=session_id,
            )
        except ValueError as e:
            logger.error("Failed to parse intent response: %s", e)
            raise IntentDetectionError(f"Intent detection failed: {e}") from e

        entries = self._entries_from_payload(payload)
        strict = bot.strict_intent_detection
        intents: list[DetectedIntent] = []
        for entry in entries:
            name = entry["intentName"].strip()
            if not name or name.upper() == NULL_INTENT_NAME:
                intents.append(
                    DetectedIntent(
                        code=IntentDetectionCode.INTENT_CONFIG_NOT_FOUND,
                        intent_name=NULL_INTENT_NAME,
                        intent_summary=entry["intentSummary"],
                        parameters=entry["parameters"],
                        strict_intent_detection=strict,
                        question_to_user=STRICT_NOT_FOUND_QUESTION if strict else "",
                    )
                )
                continue
            intents.append(
                DetectedIntent(
                    code=IntentDetectionCode.INTENT_FOUND,
                    intent_name=name,
                    intent_summary=entry["intentSummary"],
                    parameters=entry["parameters"],
                    strict_intent_detection=strict,
                )
            )

        if not intents:
            # Every entry was malformed; route like an explicit "no match".
            intents.append(
                DetectedIntent(
                    code=IntentDetectionCode.INTENT_CONFIG_NOT_FOUND,
                    intent_name=NULL_INTENT_NAME,
                    strict_intent_detection=strict,
                    question_to_user=STRICT_NOT_FOUND_QUESTION if strict else "",
                )
            )
        return IntentDetectionResult(intents=intents)

    # ─── Payload parsing ──────────────────────────────────────

    def _entries_from_payload(self, payload: Any) -> list[dict[str, Any]]:
        if not isinstance(payload, dict):
            raise IntentDetectionError("Intent result is not a JSON object")
        raw_result = payload.get("result")
        if not isinstance(raw_result, list) or not raw_result:
            logger.error("Intent result is not an array format: %r", payload)
            raise IntentDetectionError("Intent result is not an array format")

        entries: list[dict[str, Any]] = []
        for item in raw_result:
            if not isinstance(item, dict) or not isinstance(item.get("intentName"), str):
                logger.debug("Dropping malformed intent entry: %r", item)
                continue
            parameters = item.get("parameters")
            entries.append(
                {
                    "intentName": item["intentName"],
                    "intentSummary": str(item.get("intentSummary") or ""),
                    "parameters": parameters if isinstance(parameters, dict) else {},
                }
            )
        return entries

    # ─── Prompt construction ──────────────────────────────────

    def render_catalog(self, bot: BotConfig) -> str:
        intents = bot.enabled_intents
        if not intents:
            return NOT_CONFIGURED_CATALOG
        lines: list[str] = []
        for intent in intents:
            description = intent.description or ""
            if intent.required_fields:
                lines.append(
                    f"- Intent name: {intent.name}, intent description: {description}, "
                    f"this intent required fields: {intent.required_fields}."
                )
            else:
                lines.append(
                    f"- Intent name: {intent.name}, intent description: {description}, "
                    "this intent does not need required fields."
                )
        return "\n".join(lines)

    def build_prompt(self, catalog: str, chat_history: str, user_input: str) -> str:
        return f"""You are an intent classification engine. Return ONLY a valid JSON object. No explanations, no markdown.

[Context]
1. Current user's question: "{user_input}".
2. Chat history:
---History start---
{chat_history}
---History end---
3. Intent configurations:
---Intent configurations start---
{catalog}
---Intent configurations end---

[Output schema]
{{
  "result": [
    {{
      "intentName": "<matched_intent_name>",
      "intentSummary": "<one or two sentence summary of the user's intent>",
      "parameters": {{"<requiredField>": "<value extracted from the user's text>"}}
    }}
  ]
}}

[Rules]
1. Match the current question to an intent ONLY when it clearly aligns with the intent description.
   Do not guess from unrelated or ambiguous keywords.
2. If several intents are present, include every matched intent in "result".
3. Extract the intent's required fields from the user's text. Use actual values, never placeholders.
   Omit a field you cannot extract; if nothing can be extracted, use "parameters": {{}}.
4. If no configured intent matches, or the question is unclear, return exactly one entry:
   {{"intentName": "NULL", "intentSummary": "", "parameters": {{}}}}
5. Use ONLY intent names listed in the configurations. Never invent intent names.
6. Do not add properties that are not in the schema.
7. Return ONLY the JSON object."""
