from __future__ import annotations

import asyncio

import pytest

from intent.clarity import IntentClarityChecker
from shared.errors import ClarityCheckError


class FakeModelSelector:
    def __init__(self, payload=None, error: Exception | None = None):
        self.payload = payload
        self.error = error
        self.calls: list[dict] = []

    async def generate(self, messages, policy, session_id=None):
        self.calls.append({"messages": messages, "policy": policy, "session_id": session_id})
        if self.error is not None:
            raise self.error
        return self.payload


def test_clear_intent_blanks_question():
    selector = FakeModelSelector({"isIntentClear": True, "questionToUser": "anything else?"})
    result = asyncio.run(IntentClarityChecker(selector).check("", "[role: user]: book a room in Paris"))
    assert result.is_intent_clear is True
    assert result.question_to_user == ""


def test_unclear_intent_keeps_question():
    selector = FakeModelSelector({"isIntentClear": False, "questionToUser": "What would you like to do?"})
    result = asyncio.run(IntentClarityChecker(selector).check("Be nice.", "[role: user]: hi"))
    assert result.is_intent_clear is False
    assert result.question_to_user == "What would you like to do?"


def test_prompt_embeds_history_and_guidelines_and_uses_json_policy():
    selector = FakeModelSelector({"isIntentClear": True, "questionToUser": ""})
    asyncio.run(IntentClarityChecker(selector, model_name="clarity-model").check("", "[role: user]: hello"))
    call = selector.calls[0]
    prompt = call["messages"][0]["content"]
    assert "[role: user]: hello" in prompt
    assert "Global Guidelines:\n  None" in prompt
    assert "Never ask the user to provide" in prompt
    assert call["policy"].json_mode is True
    assert call["policy"].temperature == 0.0
    assert call["policy"].model_name == "clarity-model"


@pytest.mark.parametrize(
    "payload",
    [
        "not an object",
        {"questionToUser": "?"},
        {"isIntentClear": "maybe", "questionToUser": "?"},
        {"isIntentClear": False},
    ],
)
def test_unusable_verdict_raises(payload):
    selector = FakeModelSelector(payload)
    with pytest.raises(ClarityCheckError):
        asyncio.run(IntentClarityChecker(selector).check("", "[role: user]: hi"))


def test_unparsable_output_raises_clarity_error():
    selector = FakeModelSelector(error=ValueError("Invalid JSON from model"))
    with pytest.raises(ClarityCheckError):
        asyncio.run(IntentClarityChecker(selector).check("", "[role: user]: hi"))
