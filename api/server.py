"""
HTTP chat API.

Implements:
- POST /api/chat  -> framed text/event-stream
- GET  /health
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Literal

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from main import build_pipeline
from orchestrator.dispatcher import BOT_NOT_FOUND_MESSAGE, SYSTEM_TURN_VIOLATION, apology_frame
from shared.errors import BotNotFoundError, HandlerConfigError, OriginForbiddenError, ProtocolViolationError
from shared.framing import frame_message
from shared.models import ConversationTurn, RequestContext

logger = logging.getLogger(__name__)


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str = Field(..., min_length=1)


class ChatRequest(BaseModel):
    botId: str = Field(..., min_length=1)
    messages: list[ChatMessage]


def build_request_context(request: Request) -> RequestContext:
    headers = request.headers
    return RequestContext(
        origin=headers.get("origin", ""),
        referer=headers.get("referer", ""),
        host=headers.get("host", ""),
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else "",
        user_agent=headers.get("user-agent", ""),
        headers=dict(headers),
    )


@asynccontextmanager
async def lifespan(_app: FastAPI):
    dispatcher, bot_store, model_selector = build_pipeline()
    _app.state.dispatcher = dispatcher
    _app.state.bot_store = bot_store
    yield
    await model_selector.close()


app = FastAPI(
    title="Chat Flow Orchestrator API",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    return JSONResponse(
        status_code=400,
        content={"message": "Validation error", "error": [str(item.get("msg", item)) for item in errors]},
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


async def _single_frame(frame: str):
    yield frame


@app.post("/api/chat")
async def chat(body: ChatRequest, request: Request):
    dispatcher = request.app.state.dispatcher
    messages = [ConversationTurn(role=item.role, content=item.content) for item in body.messages]
    headers = {"Cache-Control": "no-cache", "Connection": "keep-alive"}

    try:
        turn = await dispatcher.admit(body.botId, messages, build_request_context(request))
    except BotNotFoundError:
        return StreamingResponse(
            _single_frame(frame_message(BOT_NOT_FOUND_MESSAGE)), media_type="text/event-stream", headers=headers
        )
    except HandlerConfigError as e:
        logger.exception("Stored configuration for bot %s is invalid", body.botId)
        return StreamingResponse(
            _single_frame(apology_frame(e, dispatcher.expose_error_details)),
            media_type="text/event-stream",
            headers=headers,
        )
    except OriginForbiddenError:
        return JSONResponse(status_code=403, content={"error": "Traffic is not allowed"})
    except ProtocolViolationError:
        return JSONResponse(status_code=400, content={"message": SYSTEM_TURN_VIOLATION})

    return StreamingResponse(dispatcher.stream(turn), media_type="text/event-stream", headers=headers)
