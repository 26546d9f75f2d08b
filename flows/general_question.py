"""
General Question Flow — free-form answer over the full chat history.

Used when no configured intent matches and the bot is not in strict mode.
"""

import logging
import os
from typing import AsyncIterator

from flows.streaming import NO_HEADER_ONE_RULE, stream_message_frame
from models.selector import ModelSelector
from shared.models import BotConfig, ConversationTurn, ModelPolicy

logger = logging.getLogger(__name__)


def chat_policy(model_name: str | None = None, temperature: float = 0.7) -> ModelPolicy:
    resolved_model = (model_name or os.getenv("CHAT_MODEL_NAME", "llama3.1:8b")).strip() or "llama3.1:8b"
    return ModelPolicy(
        model_name=resolved_model,
        temperature=temperature,
        timeout_seconds=float(os.getenv("CHAT_MODEL_TIMEOUT_SECONDS", "60")),
        max_retries=1,
        json_mode=False,  # Chat returns text, not JSON
    )


class GeneralQuestionFlow:
    """Stream an answer with the bot's guidelines prepended as a system turn."""

    def __init__(self, model_selector: ModelSelector, model_name: str | None = None):
        self.model_selector = model_selector
        self.policy = chat_policy(model_name)

    def build_chat_messages(self, messages: list[ConversationTurn], bot: BotConfig) -> list[dict[str, str]]:
        """Copy of the history with a synthetic guidelines turn in front."""
        system_prompt = (
            "===============\n"
            "Global Guidelines:\n"
            f"  {NO_HEADER_ONE_RULE}\n"
            f"  {bot.guidelines or ''}\n"
            "==============="
        )
        return [{"role": "system", "content": system_prompt}] + [
            {"role": turn.role, "content": turn.content} for turn in messages
        ]

    def run(self, messages: list[ConversationTurn], bot: BotConfig) -> AsyncIterator[str]:
        logger.info("General question flow started for bot %s", bot.id)
        chunks = self.model_selector.stream(self.build_chat_messages(messages, bot), self.policy)
        return stream_message_frame(chunks)
