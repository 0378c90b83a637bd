"""Coaching chat streaming endpoint."""

import asyncio

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from app.core.auth_middleware import AuthContext, require_auth
from app.core.chat_stream import ChatStreamConfig, generate_chat_stream
from app.core.config import get_settings
from app.core.logging import get_logger
from app.core.schemas_chat import ChatStreamRequest
from app.db.conversations import get_conversation
from app.db.messages import list_recent_messages

logger = get_logger(__name__)

router = APIRouter()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post("/chat-stream")
async def chat_stream(
    request: ChatStreamRequest,
    auth: AuthContext = Depends(require_auth),
) -> StreamingResponse:
    """
    Stream one coaching reply as Server-Sent Events.

    This endpoint:
    1. Checks the conversation belongs to the caller
    2. Loads recent history
    3. Hands off to the streaming engine (signals, prompt, model, persistence)

    Args:
        request: Message, conversation and retry flag
        auth: Authenticated caller

    Returns:
        StreamingResponse of token, done and error frames
    """
    message = (request.message or "").strip()
    conversation_id = (request.conversation_id or "").strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required")
    if not conversation_id:
        raise HTTPException(status_code=400, detail="Conversation ID is required")

    settings = get_settings()
    if not settings.ANTHROPIC_API_KEY:
        raise HTTPException(
            status_code=500,
            detail="Anthropic API key not configured. Please set ANTHROPIC_API_KEY in environment.",
        )

    try:
        conversation = await asyncio.to_thread(get_conversation, conversation_id, auth.user_id)
    except Exception as e:
        logger.error(f"Failed to load conversation {conversation_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to load conversation") from e
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")

    try:
        history = await asyncio.to_thread(list_recent_messages, conversation_id, settings.CHAT_HISTORY_LIMIT)
    except Exception as e:
        logger.warning(f"History load failed (non-fatal): {e}", extra={"conversation_id": conversation_id})
        history = []

    config = ChatStreamConfig(
        user_id=auth.user_id,
        conversation_id=conversation_id,
        message=message,
        conversation_history=history,
        current_domain=conversation.get("domain"),
        conversation_type=conversation.get("type"),
        retry=request.retry,
        anthropic_api_key=settings.ANTHROPIC_API_KEY,
        chat_model=settings.CHAT_MODEL,
        max_tokens=settings.CHAT_MAX_TOKENS,
        temperature=settings.CHAT_TEMPERATURE,
        stream_timeout=settings.MODEL_STREAM_TIMEOUT_SECONDS,
        history_limit=settings.CHAT_HISTORY_LIMIT,
    )

    logger.info(
        f"Chat stream: user={auth.user_id}, history={len(history)}, retry={request.retry}",
        extra={"conversation_id": conversation_id},
    )

    return StreamingResponse(
        generate_chat_stream(config),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
