"""Ask Params Flow — prompt the user for the missing required fields of an intent."""

import logging
from typing import AsyncIterator

from flows.general_question import chat_policy
from flows.streaming import stream_message_frame
from models.selector import ModelSelector

logger = logging.getLogger(__name__)


class AskParamsFlow:
    def __init__(self, model_selector: ModelSelector, model_name: str | None = None):
        self.model_selector = model_selector
        self.policy = chat_policy(model_name)

    def build_chat_messages(self, user_input: str, chat_history: str, missing_fields: str) -> list[dict[str, str]]:
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
  - To process the user's question (intention), the user needs to provide these parameters: {missing_fields}.
    Write a short message asking the user to provide them.
  - Your only purpose is to get the missing parameters. Do not answer the question and do not say anything irrelevant.
  - Reply with plain text.
===============""",
            }
        ]

    def run(self, user_input: str, chat_history: str, missing_fields: str) -> AsyncIterator[str]:
        logger.info("Ask params flow started: missing=%s", missing_fields)
        chunks = self.model_selector.stream(
            self.build_chat_messages(user_input, chat_history, missing_fields),
            self.policy,
        )
        return stream_message_frame(chunks)
