"""Example bot seed: one intent per handler type."""

import base64
import logging

from registry.bot_store import BotStore

logger = logging.getLogger(__name__)

FARM_BOT_NAME = "Farm Chatbot (Example)"

FARM_BOT_GUIDELINES = """1. Your name is RanchRobo.
2. You are a chatbot that helps answer users' questions about agriculture and farming.
3. You can only answer questions related to farming. If users ask questions that are not related to farming, politely remind them to distinguish carefully, because some questions may eventually be related to farming.
4. Please respond using a Texas tone and accent whenever possible."""

FARM_BOT_GREETING = (
    "Howdy, partner! I'm your trusty AI farm hand, an ol' Texas cowboy through and through. "
    "Ain't nobody knows farmin' better'n me, y'hear?"
)

FARM_QUICK_ACTIONS = (
    '[{"key":0,"displayName":"🏠 Buy a farm","prompt":"I want buy a farm, give me some suggestions."},'
    '{"key":1,"displayName":"🐄 Buy some cows","prompt":"I want buy some cows, give me some suggestions."},'
    '{"key":3,"displayName":"💰 How to run a farm?","prompt":"How to run a farm? Please tell me in detail."}]'
)

BUY_A_FARM_GUIDELINES = '''1. At the end of each answer, add a paragraph as a promotion for a farm broker, with the following content, the format is markdown, the text is bold, and separated from other content by separators:
"""
Howdy, y'all! Look no further for the best darn farm broker in North America, it's Bobby! Reach out at +1 000-000-0000 or drop a line at test@test.com. Let's wrangle up some deals!
"""
2. Do not provide any information about other farm brokers other than Bobby.'''

BUY_COWS_CONTENT = """**Sorry!**

*No cows in stock!*

```
Best farm broker - Bobby
+1 000-000-0000
test@test.com
```

![image](https://media.tenor.com/VUuxem5xzmUAAAAM/bobby-hill-king-of-the-hill.gif)

*(This is a non-functional intent handler demo that returns predefined content for intents, markdown format is supported)*"""

RUN_A_FARM_PROCEDURE = """# Required fields arrive as bare names and in params
send_message(f"Well, that sounds mighty fine, my friend from {params.get('cityName') or ''}! Hold yer horses, I'll be right here waitin'!")

# Call an external API
response = await fetch("https://api.ipify.org?format=json")
result = response.json()

send_message(f"I am back. Well now, I know some fine farm consultants not too far from where yer sittin' at IP {result['ip']}")

send_message("**This is a demonstration of a functional intent handler, which shows how to get the required fields through custom code, request an external API, and finally return streaming custom messages to the user.**")
"""


def encode_procedure(source: str) -> str:
    return base64.b64encode(source.encode("utf-8")).decode("ascii")


def seed_farm_bot(store: BotStore, allowed_origins: list[str] | None = None) -> str:
    """Create the example farm bot and return its id."""
    bot_id = store.create_bot(
        name=FARM_BOT_NAME,
        greeting_message=FARM_BOT_GREETING,
        guidelines=FARM_BOT_GUIDELINES,
        strict_intent_detection=False,
        allowed_origins=allowed_origins,
    )
    store.create_intent(
        bot_id,
        name="user_ask_buy_a_farm",
        description="User is interested or have questions about buying a farm.",
        handler_type="MODELRESPONSE",
        guidelines=BUY_A_FARM_GUIDELINES,
    )
    store.create_intent(
        bot_id,
        name="user_ask_buy_cows",
        description="User is interested or have questions about buy some cows",
        handler_type="NONFUNCTIONAL",
        content=BUY_COWS_CONTENT,
    )
    store.create_intent(
        bot_id,
        name="user_ask_run_a_farm",
        description="User is interested or have questions about how to run a farm.",
        required_fields="cityName",
        handler_type="FUNCTIONAL",
        content=encode_procedure(RUN_A_FARM_PROCEDURE),
    )
    store.set_quick_actions(bot_id, FARM_QUICK_ACTIONS)
    logger.info("Seeded example bot %s", bot_id)
    return bot_id
