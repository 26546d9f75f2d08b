from __future__ import annotations

import asyncio
import threading

import main
from shared.framing import frame_message


class EchoDispatcher:
    def __init__(self):
        self.histories: list[list[str]] = []

    async def process_chat(self, bot_id, messages, request_context=None):
        self.histories.append([turn.content for turn in messages])
        if not messages:
            yield frame_message("Welcome!")
            return
        yield frame_message(f"echo: {messages[-1].content}")


class ClosingSelector:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


def test_chat_loop_reads_input_off_the_event_loop(monkeypatch):
    dispatcher = EchoDispatcher()
    selector = ClosingSelector()
    replies = iter(["hello", "", "exit"])
    input_threads: list[str] = []

    def fake_input(prompt=""):
        input_threads.append(threading.current_thread().name)
        return next(replies)

    monkeypatch.setattr(main, "build_pipeline", lambda: (dispatcher, None, selector))
    monkeypatch.setattr(main.console, "input", fake_input)

    asyncio.run(main.run_chat_loop("farm"))

    assert len(input_threads) == 3
    assert threading.main_thread().name not in input_threads
    assert dispatcher.histories == [[], ["hello"]]
    assert selector.closed
