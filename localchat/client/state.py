"""Client-side state containers: the chat list with its messages, and UI flags."""

import itertools
import time
from enum import Enum
from typing import Callable, List, Literal, Optional

from pydantic import BaseModel, Field

_local_ids = itertools.count(1)


def local_id() -> str:
    return f"local-{next(_local_ids)}"


def now_label() -> str:
    return time.strftime("%H:%M")


class StreamState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    ERROR = "error"  # idle, but the last send failed


class ClientMessage(BaseModel):
    id: str = Field(default_factory=local_id)
    server_id: Optional[int] = None
    role: Literal["user", "assistant"]
    content: str = ""
    timestamp: str = Field(default_factory=now_label)
    error: bool = False          # failed to send, offer retry
    is_retrying: bool = False
    stopped: bool = False


class ClientChat(BaseModel):
    id: str
    title: str
    timestamp: str = "Now"
    messages: List[ClientMessage] = Field(default_factory=list)


class Notification(BaseModel):
    id: int
    message: str
    title: str = "Connection Issue"
    expires_at: float


class ChatState:

    def __init__(self):
        self.chats: List[ClientChat] = []
        self.active_chat_id: Optional[str] = None
        self.is_creating_chat = False
        self.is_loading_chats = False

    @property
    def active_chat(self) -> Optional[ClientChat]:
        return self.get_chat(self.active_chat_id) if self.active_chat_id else None

    def get_chat(self, chat_id: str) -> Optional[ClientChat]:
        return next((chat for chat in self.chats if chat.id == chat_id), None)

    def set_active_chat(self, chat_id: Optional[str]):
        self.active_chat_id = chat_id

    def add_chat(self, chat: ClientChat):
        self.chats.insert(0, chat)

    def set_chats(self, chats: List[ClientChat]):
        # 이미 불러온 메시지는 유지
        loaded = {chat.id: chat.messages for chat in self.chats}
        for chat in chats:
            if not chat.messages and chat.id in loaded:
                chat.messages = loaded[chat.id]
        self.chats = chats
        if self.active_chat is None:
            self.active_chat_id = chats[0].id if chats else None

    def replace_chat(self, chat: ClientChat):
        for index, existing in enumerate(self.chats):
            if existing.id == chat.id:
                self.chats[index] = chat
                return
        self.add_chat(chat)

    def update_chat(self, chat_id: str, **updates):
        chat = self.get_chat(chat_id)
        if chat is not None:
            for key, value in updates.items():
                setattr(chat, key, value)

    def remove_chat(self, chat_id: str):
        self.chats = [chat for chat in self.chats if chat.id != chat_id]
        if self.active_chat_id == chat_id:
            self.active_chat_id = None

    def add_message(self, chat_id: str, message: ClientMessage, after_id: Optional[str] = None):
        chat = self.get_chat(chat_id)
        if chat is None:
            return
        if after_id is not None:
            for index, existing in enumerate(chat.messages):
                if existing.id == after_id:
                    chat.messages.insert(index + 1, message)
                    return
        chat.messages.append(message)

    def find_message(self, chat_id: str, message_id: str) -> Optional[ClientMessage]:
        chat = self.get_chat(chat_id)
        if chat is None:
            return None
        return next((msg for msg in chat.messages if msg.id == message_id), None)

    def remove_message(self, chat_id: str, message_id: str):
        chat = self.get_chat(chat_id)
        if chat is not None:
            chat.messages = [msg for msg in chat.messages if msg.id != message_id]


class UIState:
    """Stream flags plus the notification queue.

    ``stream_in_flight`` stays set until the send request has fully resolved,
    even after a local stop has already put ``stream_state`` back to idle.
    """

    def __init__(self, notification_ttl: float = 10, clock: Callable[[], float] = time.monotonic):
        self.stream_state = StreamState.IDLE
        self.active_stream_id: Optional[str] = None
        self.is_typing = False
        self.stream_in_flight = False
        self.notifications: List[Notification] = []
        self.notification_ttl = notification_ttl
        self._clock = clock
        self._notification_ids = itertools.count(1)

    @property
    def is_stream_active(self) -> bool:
        return self.stream_state in (StreamState.SENDING, StreamState.STREAMING)

    def begin_send(self):
        self.stream_state = StreamState.SENDING
        self.active_stream_id = None
        self.is_typing = True
        self.stream_in_flight = True

    def begin_streaming(self, stream_id: Optional[str]):
        self.stream_state = StreamState.STREAMING
        self.active_stream_id = stream_id

    def reset_stream(self, state: StreamState = StreamState.IDLE):
        self.stream_state = state
        self.active_stream_id = None
        self.is_typing = False

    def notify(self, message: str, title: str = "Connection Issue", ttl: Optional[float] = None) -> Notification:
        notification = Notification(
            id=next(self._notification_ids),
            message=message,
            title=title,
            expires_at=self._clock() + (self.notification_ttl if ttl is None else ttl),
        )
        self.notifications.append(notification)
        return notification

    def dismiss(self, notification_id: int):
        self.notifications = [n for n in self.notifications if n.id != notification_id]

    def active_notifications(self) -> List[Notification]:
        now = self._clock()
        self.notifications = [n for n in self.notifications if n.expires_at > now]
        return list(self.notifications)
