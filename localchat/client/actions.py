"""User actions driving ``ChatState``/``UIState`` through ``ChatAPI``.

Client stream states: idle -> sending -> streaming -> (idle | error). Every
action ends in a handler that clears the in-flight flags, so a failure can
never leave the UI stuck in a loading state.
"""

from typing import Any, Dict, Optional

from localchat.client.api import APIError, ChatAPI
from localchat.client.state import ChatState, ClientChat, ClientMessage, StreamState, UIState
from localchat.core.config import settings
from localchat.core.logger import get_logger
from localchat.core.utils import derive_title

logger = get_logger(__name__)

DEFAULT_TITLE = settings["chat"]["default_title"]


def chat_from_payload(data: Dict[str, Any]) -> ClientChat:
    return ClientChat(
        id=data["id"],
        title=data["title"],
        timestamp=data.get("timestamp", "Now"),
        messages=[
            ClientMessage(
                server_id=msg["id"],
                role=msg["role"],
                content=msg["content"],
                timestamp=msg.get("timestamp", ""),
                error=msg.get("failed", False),
                stopped=msg.get("stopped", False),
            )
            for msg in data.get("messages", [])
        ],
    )


def describe_error(error: Exception) -> str:
    if isinstance(error, APIError):
        if error.is_network_error:
            return "Connection error: Please make sure the server is running."
        if error.status == 502:
            return f"AI Error: Please make sure Ollama is running with the {settings['llm']['model']} model."
        return error.message
    return f"Streaming error: {error}"


class _Send:
    """Bookkeeping for one in-flight send request."""

    def __init__(self, chat_id: str, user: ClientMessage, reply: ClientMessage):
        self.chat_id = chat_id
        self.user = user
        self.reply = reply
        self.stopped = False


class ChatActions:

    def __init__(self, api: ChatAPI, chats: Optional[ChatState] = None, ui: Optional[UIState] = None):
        self.api = api
        self.chats = chats or ChatState()
        self.ui = ui or UIState(notification_ttl=settings["client"]["notification_ttl"])
        self._current: Optional[_Send] = None

    # ------------------------------------------------------------------
    # Chat list
    # ------------------------------------------------------------------

    async def create_new_chat(self, title: Optional[str] = None) -> Optional[ClientChat]:
        self.chats.is_creating_chat = True
        try:
            response = await self.api.create_chat(title)
            chat = chat_from_payload(response["data"])
            self.chats.add_chat(chat)
            self.chats.set_active_chat(chat.id)
            return chat
        except APIError as e:
            logger.error(f"Error creating chat: {e.message}")
            self.ui.notify(describe_error(e) if e.is_network_error else "Failed to create new chat")
            return None
        finally:
            self.chats.is_creating_chat = False

    async def load_chats(self) -> bool:
        self.chats.is_loading_chats = True
        try:
            response = await self.api.get_chats()
            self.chats.set_chats([chat_from_payload(data) for data in response.get("data", [])])
            return True
        except APIError as e:
            logger.error(f"Error loading chats: {e.message}")
            self.ui.notify("Failed to load chats from server")
            return False
        finally:
            self.chats.is_loading_chats = False

    async def load_chat_messages(self, chat_id: str) -> Optional[ClientChat]:
        try:
            response = await self.api.get_chat(chat_id)
        except APIError as e:
            if e.is_not_found:
                # 없어진 채팅에서 벗어난다
                self.chats.remove_chat(chat_id)
                self.ui.notify("This chat no longer exists", title="Chat not found")
            else:
                logger.error(f"Error loading chat messages: {e.message}")
                self.ui.notify("Failed to load chat messages")
            return None

        chat = chat_from_payload(response["data"])
        self.chats.replace_chat(chat)
        return chat

    async def open_chat(self, chat_id: str) -> Optional[ClientChat]:
        chat = await self.load_chat_messages(chat_id)
        if chat is not None:
            self.chats.set_active_chat(chat.id)
        return chat

    async def rename_chat(self, chat_id: str, title: str) -> bool:
        try:
            response = await self.api.update_chat(chat_id, title)
        except APIError as e:
            logger.error(f"Error renaming chat: {e.message}")
            if e.is_not_found:
                self.chats.remove_chat(chat_id)
            self.ui.notify(describe_error(e))
            return False
        self.chats.update_chat(chat_id, title=response["data"]["title"])
        return True

    async def delete_chat(self, chat_id: str) -> bool:
        try:
            await self.api.delete_chat(chat_id)
        except APIError as e:
            if not e.is_not_found:
                logger.error(f"Error deleting chat: {e.message}")
                self.ui.notify(describe_error(e))
                return False
        self.chats.remove_chat(chat_id)
        return True

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def send_message(self, content: str) -> bool:
        content = content.strip()
        chat = self.chats.active_chat
        if not content or chat is None:
            return False
        if self.ui.stream_in_flight:
            logger.warning("Previous stream has not resolved yet; send ignored")
            return False

        user = ClientMessage(role="user", content=content)
        self.chats.add_message(chat.id, user)

        if chat.title == DEFAULT_TITLE and not any(m.role == "user" and m is not user for m in chat.messages):
            self.chats.update_chat(chat.id, title=derive_title(content, settings["chat"]["title_max_length"]))

        await self._stream_reply(chat.id, user, retry=False)
        return True

    async def retry_message(self, message_id: str) -> bool:
        """Re-send a failed user message in place; a second click while retrying is ignored."""
        chat = self.chats.active_chat
        if chat is None:
            return False
        message = self.chats.find_message(chat.id, message_id)
        if message is None or message.role != "user" or not message.error:
            return False
        if message.is_retrying or self.ui.stream_in_flight:
            return False

        message.is_retrying = True
        await self._stream_reply(chat.id, message, retry=True)
        return True

    async def stop_stream(self) -> int:
        chat = self.chats.active_chat
        stream_id = self.ui.active_stream_id

        current = self._current
        if current is not None:
            current.stopped = True
            current.reply.stopped = True

        # 서버 요청 결과와 관계없이 바로 idle로 돌린다
        self.ui.reset_stream()

        if chat is None:
            return 0
        try:
            response = await self.api.stop_stream(chat.id, stream_id)
            return response.get("stoppedCount", 0)
        except APIError as e:
            logger.warning(f"Error stopping stream: {e.message}")
            if e.is_network_error:
                self.ui.notify(describe_error(e))
            return 0

    async def _stream_reply(self, chat_id: str, user: ClientMessage, retry: bool):
        reply = ClientMessage(role="assistant")
        self.chats.add_message(chat_id, reply, after_id=user.id)
        send = _Send(chat_id, user, reply)
        self._current = send
        self.ui.begin_send()

        def on_message_id(message_id: int):
            user.server_id = message_id

        def on_stream_id(stream_id: str):
            if not send.stopped:
                self.ui.begin_streaming(stream_id)

        def on_token(char: str):
            if send.stopped:
                return
            if self.ui.is_typing:
                self.ui.is_typing = False
            reply.content += char

        def on_complete(full_response: str):
            user.error = False
            if not send.stopped:
                reply.content = full_response
                self.ui.reset_stream()
            if not reply.content:
                self.chats.remove_message(chat_id, reply.id)

        def on_error(error: Exception):
            if send.stopped:
                logger.info(f"Stopped stream ended with: {error}")
                if not reply.content:
                    self.chats.remove_message(chat_id, reply.id)
                return

            logger.error(f"Streaming error: {error}")
            if isinstance(error, APIError) and error.payload.get("messageId") is not None:
                user.server_id = error.payload["messageId"]
            user.error = True
            # 실패한 답변은 만들어 두지 않는다
            self.chats.remove_message(chat_id, reply.id)
            self.ui.notify(describe_error(error))
            self.ui.reset_stream(StreamState.ERROR)

        try:
            await self.api.send_and_stream(
                chat_id,
                user.content,
                on_token=on_token,
                on_complete=on_complete,
                on_error=on_error,
                on_stream_id=on_stream_id,
                on_message_id=on_message_id,
                retry_message_id=user.server_id if retry else None,
            )
        except Exception as e:
            on_error(e)
        finally:
            user.is_retrying = False
            self.ui.stream_in_flight = False
            if self.ui.is_stream_active:
                self.ui.reset_stream()
            self.ui.is_typing = False
            if self._current is send:
                self._current = None
