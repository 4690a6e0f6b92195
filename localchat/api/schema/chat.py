from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ----------------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------------

class CreateChatRequest(CamelModel):
    title: Optional[str] = None


class UpdateChatRequest(CamelModel):
    title: str = Field(min_length=1, max_length=200)


class MessageRequest(CamelModel):
    content: str = Field(min_length=1)
    role: Literal["user"] = "user"
    retry_message_id: Optional[int] = None


class StopRequest(CamelModel):
    stream_id: Optional[str] = None


# ----------------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------------

class Message(CamelModel):
    id: int
    role: str  # "user" or "assistant"
    content: str
    timestamp: datetime
    failed: bool = False
    stopped: bool = False


class ChatSummary(CamelModel):
    id: str
    title: str
    timestamp: str  # relative to now ("5m ago")
    updated_at: datetime


class ChatInfo(CamelModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime


class ChatDetail(ChatInfo):
    timestamp: str
    messages: List[Message]


class ChatListResponse(CamelModel):
    success: bool = True
    data: List[ChatSummary]


class ChatResponse(CamelModel):
    success: bool = True
    data: ChatInfo
    message: Optional[str] = None


class ChatDetailResponse(CamelModel):
    success: bool = True
    data: ChatDetail


class DeletedChat(CamelModel):
    id: str


class DeleteChatResponse(CamelModel):
    success: bool = True
    data: DeletedChat
    message: Optional[str] = None


class StopResponse(CamelModel):
    success: bool = True
    stopped_count: int
    message: Optional[str] = None


class ErrorResponse(CamelModel):
    success: bool = False
    message: str
    error: str
