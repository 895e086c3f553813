"""Server-sent events for a streamed chat turn.

Event order is `start`, any number of `chunk`, then exactly one of
`complete` or `error`.
"""
import asyncio
import json
import logging
from typing import AsyncIterator

from fastapi import Request
from fastapi.responses import StreamingResponse

from ..core.db import SessionLocal
from ..conversation.errors import ChatError, ProcessingError
from ..conversation.orchestrator import ScreenerChatService, TurnResult
from ..llm.openai_client import OpenAIClient
from ..models import Conversation

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


async def sse_events(turn: AsyncIterator, request: Request | None = None) -> AsyncIterator[str]:
    """Wrap an orchestrator turn as SSE frames; the turn is always closed."""
    try:
        yield format_sse("start", {"type": "start"})
        async for item in turn:
            if request is not None and await request.is_disconnected():
                logger.info("Client disconnected from stream")
                return
            if isinstance(item, TurnResult):
                yield format_sse("complete", {"type": "complete", **item.as_dict()})
            else:
                yield format_sse("chunk", {"type": "chunk", "content": item})
    except asyncio.CancelledError:
        logger.info("Stream cancelled by client disconnect")
        raise
    except ChatError as e:
        yield format_sse("error", {"type": "error", "message": e.detail})
    except Exception:
        logger.exception("Stream failed")
        yield format_sse("error", {"type": "error", "message": ProcessingError.detail})
    finally:
        await turn.aclose()


def stream_turn(conversation_id: str, content: str, llm: OpenAIClient, request: Request) -> StreamingResponse:
    """Stream one turn on its own session, independent of the request's."""

    async def events():
        db = SessionLocal()
        try:
            conversation = db.get(Conversation, conversation_id)
            service = ScreenerChatService(db, conversation, llm)
            async for frame in sse_events(service.iter_turn(content, stream=True), request):
                yield frame
        finally:
            db.close()

    return StreamingResponse(events(), media_type="text/event-stream", headers=SSE_HEADERS)
