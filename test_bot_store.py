from __future__ import annotations

import base64

import pytest

from registry.bot_store import BotStore, build_handler
from registry.seeds import FARM_QUICK_ACTIONS, RUN_A_FARM_PROCEDURE, seed_farm_bot
from sandbox.validator import validate_procedure
from shared.errors import HandlerConfigError
from shared.models import HandlerType


@pytest.fixture
def store(tmp_path):
    return BotStore(db_path=str(tmp_path / "bots.db"))


def test_create_and_load_bot(store):
    bot_id = store.create_bot(
        "Hotel",
        greeting_message="Welcome!",
        guidelines="Be polite.",
        allowed_origins=["https://partner.io"],
    )
    store.create_intent(
        bot_id,
        name="book_room",
        description="Book a room",
        required_fields="cityName",
        handler_type="NONFUNCTIONAL",
        content="Booked!",
    )

    bot = store.load_bot_with_enabled_intents(bot_id)

    assert bot.greeting_message == "Welcome!"
    assert bot.allowed_origins == ["https://partner.io"]
    assert bot.strict_intent_detection is False
    assert bot.quick_actions is None
    [intent] = bot.intents
    assert intent.required_fields == "cityName"
    assert intent.handler.type == HandlerType.NONFUNCTIONAL
    assert intent.handler.content == "Booked!"


def test_unknown_bot_loads_as_none(store):
    assert store.load_bot_with_enabled_intents("nope") is None


def test_disabled_intents_are_not_loaded(store):
    bot_id = store.create_bot("Hotel")
    store.create_intent(bot_id, name="on", handler_type="NONFUNCTIONAL", content="x")
    store.create_intent(bot_id, name="off", handler_type="NONFUNCTIONAL", content="y", is_enabled=False)
    assert [i.name for i in store.load_bot_with_enabled_intents(bot_id).intents] == ["on"]


def test_handler_payload_is_normalized_by_type(store):
    bot_id = store.create_bot("Hotel")
    store.create_intent(
        bot_id,
        name="info",
        handler_type="MODELRESPONSE",
        content="dropped",
        guidelines="Mention the pool.",
    )
    handler = store.load_bot_with_enabled_intents(bot_id).intents[0].handler
    assert handler.content is None
    assert handler.guidelines == "Mention the pool."


def test_handler_without_content_is_a_config_error(store):
    bot_id = store.create_bot("Hotel")
    with pytest.raises(HandlerConfigError):
        store.create_intent(bot_id, name="empty", handler_type="FUNCTIONAL", content="")


def test_build_handler_rejects_guidelines_on_fixed_text():
    with pytest.raises(HandlerConfigError, match="must not define guidelines"):
        build_handler("h", "NONFUNCTIONAL", content="text", guidelines="nope")


def test_duplicate_intent_names_are_rejected(store):
    bot_id = store.create_bot("Hotel")
    store.create_intent(bot_id, name="dup", handler_type="NONFUNCTIONAL", content="x")
    with pytest.raises(ValueError, match="already exists"):
        store.create_intent(bot_id, name="dup", handler_type="NONFUNCTIONAL", content="y")


def test_strict_flag_quick_actions_and_delete(store):
    bot_id = store.create_bot("Hotel")
    intent_id = store.create_intent(bot_id, name="x", handler_type="NONFUNCTIONAL", content="x")

    assert store.update_bot_strict_intent_detection(bot_id, True)
    store.set_quick_actions(bot_id, [{"key": 0, "displayName": "Book"}])
    store.set_quick_actions(bot_id, '[{"key":1}]')
    bot = store.load_bot_with_enabled_intents(bot_id)
    assert bot.strict_intent_detection is True
    assert bot.quick_actions.config == '[{"key":1}]'

    assert store.delete_intent(intent_id)
    assert store.load_bot_with_enabled_intents(bot_id).intents == []

    store.set_quick_actions(bot_id, None)
    assert store.load_bot_with_enabled_intents(bot_id).quick_actions is None

    assert store.delete_bot(bot_id)
    assert store.load_bot_with_enabled_intents(bot_id) is None
    assert not store.delete_bot(bot_id)


def test_list_bots_counts_intents(store):
    bot_id = store.create_bot("Hotel", strict_intent_detection=True)
    store.create_intent(bot_id, name="a", handler_type="NONFUNCTIONAL", content="x")
    store.create_intent(bot_id, name="b", handler_type="NONFUNCTIONAL", content="x", is_enabled=False)
    [row] = store.list_bots()
    assert row["id"] == bot_id
    assert row["intent_count"] == 2
    assert row["enabled_intent_count"] == 1
    assert row["strict_intent_detection"] is True


def test_farm_seed_has_one_intent_per_handler_type(store):
    bot_id = seed_farm_bot(store)
    bot = store.load_bot_with_enabled_intents(bot_id)

    assert {i.handler.type for i in bot.intents} == set(HandlerType)
    assert bot.quick_actions.config == FARM_QUICK_ACTIONS
    functional = next(i for i in bot.intents if i.handler.type == HandlerType.FUNCTIONAL)
    assert functional.required_fields == "cityName"
    source = base64.b64decode(functional.handler.content).decode("utf-8")
    assert source == RUN_A_FARM_PROCEDURE
    validate_procedure(source)
