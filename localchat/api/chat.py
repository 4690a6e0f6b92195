from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from localchat.api.schema.chat import (
    ChatDetail,
    ChatDetailResponse,
    ChatInfo,
    ChatListResponse,
    ChatResponse,
    ChatSummary,
    CreateChatRequest,
    DeletedChat,
    DeleteChatResponse,
    ErrorResponse,
    Message,
    MessageRequest,
    StopRequest,
    StopResponse,
    UpdateChatRequest,
)
from localchat.core.config import settings
from localchat.core.logger import get_logger
from localchat.core.utils import format_relative_time
from localchat.storage import models
from localchat.storage.store import ChatStore
from localchat.streaming.pipeline import TokenPipeline
from localchat.streaming.registry import StreamRegistry

logger = get_logger(__name__)

router = APIRouter(tags=["chat"])

STREAM_HEADER = settings["stream"]["header"]
MESSAGE_HEADER = settings["stream"]["message_header"]


# ============================================================================
# Helper Functions
# ============================================================================

def get_store(request: Request) -> ChatStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(500, detail="Chat store is not initialized")
    return store


def get_registry(request: Request) -> StreamRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(500, detail="Stream registry is not initialized")
    return registry


def get_pipeline(request: Request) -> TokenPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(500, detail="Token pipeline is not initialized")
    return pipeline


def format_messages(messages: List[models.Message]) -> List[Message]:
    return [
        Message(
            id=msg.id,
            role=msg.role,
            content=msg.content,
            timestamp=msg.created_at,
            failed=msg.failed,
            stopped=msg.stopped,
        )
        for msg in messages
    ]


def chat_info(chat: models.Chat) -> ChatInfo:
    return ChatInfo(
        id=chat.id,
        title=chat.title,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
    )


# ============================================================================
# Chat Endpoints
# ============================================================================

@router.get("/chats", response_model=ChatListResponse)
def get_chats(request: Request):
    """All chats, most recently updated first. Messages are not included."""
    chats = get_store(request).list_chats()
    return ChatListResponse(
        data=[
            ChatSummary(
                id=chat.id,
                title=chat.title,
                timestamp=format_relative_time(chat.updated_at),
                updated_at=chat.updated_at,
            )
            for chat in chats
        ]
    )


@router.get("/chats/{chat_id}", response_model=ChatDetailResponse)
def get_chat(chat_id: str, request: Request):
    chat = get_store(request).get_chat_with_messages(chat_id)
    return ChatDetailResponse(
        data=ChatDetail(
            **chat_info(chat).model_dump(),
            timestamp=format_relative_time(chat.updated_at),
            messages=format_messages(chat.messages),
        )
    )


@router.post("/chat", response_model=ChatResponse, status_code=201)
def create_chat(request: Request, payload: Optional[CreateChatRequest] = None):
    title = payload.title if payload else None
    chat = get_store(request).create_chat(title)
    return ChatResponse(data=chat_info(chat), message="Chat created successfully")


@router.put("/chats/{chat_id}", response_model=ChatResponse)
def update_chat(chat_id: str, request: Request, payload: UpdateChatRequest):
    chat = get_store(request).update_chat(chat_id, payload.title)
    return ChatResponse(data=chat_info(chat), message="Chat updated successfully")


@router.delete("/chats/{chat_id}", response_model=DeleteChatResponse)
async def delete_chat(chat_id: str, request: Request):
    # 삭제되는 채팅의 스트림은 먼저 멈춘다
    stopped = get_registry(request).cancel_all_for_chat(chat_id)
    if stopped:
        logger.info(f"Stopped {stopped} stream(s) of deleted chat {chat_id}")
    get_store(request).delete_chat(chat_id)
    return DeleteChatResponse(data=DeletedChat(id=chat_id), message="Chat deleted successfully")


# ============================================================================
# Streaming Endpoints
# ============================================================================

@router.post(
    "/chat/{chat_id}/message",
    response_class=StreamingResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def send_message(chat_id: str, request: Request, payload: MessageRequest):
    """Stream the assistant reply as chunked text/plain, one character per chunk.

    The stream id travels in a response header so the client can stop the
    stream before (or without) receiving a single character.
    """
    pipeline = get_pipeline(request)
    stream = await pipeline.open(chat_id, payload.content, payload.retry_message_id)

    return StreamingResponse(
        stream.body(),
        media_type="text/plain",
        headers={
            STREAM_HEADER: stream.stream_id,
            MESSAGE_HEADER: str(stream.user_message_id),
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
        background=BackgroundTask(stream.finalize),
    )


@router.post("/chat/{chat_id}/stop", response_model=StopResponse)
async def stop_chat(chat_id: str, request: Request, payload: Optional[StopRequest] = None):
    """Stop the named stream, or every stream of the chat when no id is given."""
    registry = get_registry(request)
    stream_id = payload.stream_id if payload else None

    if stream_id:
        stopped_count = 1 if registry.cancel(stream_id, chat_id=chat_id) else 0
    else:
        stopped_count = registry.cancel_all_for_chat(chat_id)

    logger.info(f"Stop requested for chat {chat_id} (stream={stream_id}): {stopped_count} stopped")
    return StopResponse(
        stopped_count=stopped_count,
        message="Stream stopped" if stopped_count else "No active stream",
    )
