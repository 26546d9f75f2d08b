"""
Model Response Flow — guided answer for MODELRESPONSE intent handlers.

Bot-level guidelines, handler-level guidelines and the current question are
combined into one system prompt; the answer is streamed as a single frame.
"""

import logging
from typing import AsyncIterator

from flows.general_question import chat_policy
from flows.streaming import NO_HEADER_ONE_RULE, stream_message_frame
from models.selector import ModelSelector

logger = logging.getLogger(__name__)


class ModelResponseFlow:
    def __init__(self, model_selector: ModelSelector, model_name: str | None = None):
        self.model_selector = model_selector
        self.policy = chat_policy(model_name)

    def build_chat_messages(
        self,
        user_input: str,
        chat_history: str,
        bot_guidelines: str,
        handler_guidelines: str,
    ) -> list[dict[str, str]]:
        return [
            {
                "role": "system",
                "content": f"""===============
Context:
  Current user's question: "{user_input}".
  Chat history:
{chat_history}
===============
Global Guidelines:
  {NO_HEADER_ONE_RULE}
  {bot_guidelines}
===============
Guidelines:
  {handler_guidelines}
===============
What you need to do:
  - Please answer the user's current question based on the Context and Guidelines.""",
            }
        ]

    def run(
        self,
        user_input: str,
        chat_history: str,
        bot_guidelines: str,
        handler_guidelines: str,
    ) -> AsyncIterator[str]:
        chunks = self.model_selector.stream(
            self.build_chat_messages(user_input, chat_history, bot_guidelines, handler_guidelines),
            self.policy,
        )
        return stream_message_frame(chunks)
