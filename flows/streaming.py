"""Relay of upstream generation chunks as one framed message."""

from __future__ import annotations

import logging
import re
from typing import AsyncIterator

from shared.framing import MESSAGE_END, MESSAGE_START
from shared.models import ConversationTurn

logger = logging.getLogger(__name__)

_LINE_BREAKS = re.compile(r"[\r\n]")

NO_HEADER_ONE_RULE = "Important: If your answer is going to be in markdown format, please do not return Header 1, which is '#'."


async def stream_message_frame(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    """
    MESSAGE_START, each upstream chunk as it arrives, MESSAGE_END.

    The first chunk is awaited before anything is written so connection-time
    failures propagate without a partial frame. A mid-stream failure still
    terminates the open frame before re-raising.
    """
    iterator = chunks.__aiter__()
    try:
        first = await iterator.__anext__()
    except StopAsyncIteration:
        first = ""
        exhausted = True
    else:
        exhausted = False

    yield MESSAGE_START
    if exhausted:
        yield MESSAGE_END
        return

    try:
        if first:
            yield first
        async for chunk in iterator:
            if chunk:
                yield chunk
    except Exception:
        logger.warning("Upstream generation failed mid-stream; closing open frame")
        yield MESSAGE_END
        raise
    yield MESSAGE_END


def format_chat_history(messages: list[ConversationTurn]) -> str:
    """One line per turn: ``[role: user]: text`` with line breaks flattened to commas."""
    return "\n".join(
        f"[role: {turn.role}]: {_LINE_BREAKS.sub(',', turn.content)}"
        for turn in messages
    )
