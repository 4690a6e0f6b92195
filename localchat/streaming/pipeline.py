"""Model -> chunked HTTP body pipeline.

``TokenPipeline.open`` does everything that has to happen before the
response starts: the user message is stored, a stream id is allocated and
registered, and the backend is primed with its first piece of output so a
backend that fails immediately can still be answered with a plain JSON error.
A stop request that arrives while priming ends the wait and closes the model
call; the response is then an empty body.

``TokenStream.body`` is what the ``StreamingResponse`` iterates. Backend
pieces are forwarded one character per chunk; the cancellation token is
checked before every character. Whatever way the body ends (completion,
stop, backend failure, client disconnect) the outcome is persisted once and
the stream id is deregistered. A backend failure re-raises out of the body so
the response is cut off without its terminating chunk.
"""

import asyncio
import contextlib
import time
from typing import AsyncIterator, List, Optional

from localchat.core.exceptions import BackendError, InvalidRetryError
from localchat.core.logger import get_logger
from localchat.core.utils import derive_title
from localchat.llm.backend import TokenBackend, Turn
from localchat.storage.models import Chat, Message
from localchat.storage.store import ChatStore
from localchat.streaming.cancellation import CancellationToken
from localchat.streaming.registry import StreamRegistry

logger = get_logger(__name__)

COMPLETED = "completed"
STOPPED = "stopped"
FAILED = "failed"
DISCONNECTED = "disconnected"


def generate_stream_id(chat_id: str) -> str:
    return f"{chat_id}-{time.time_ns()}"


def build_history(messages: List[Message], before_id: Optional[int] = None) -> List[Turn]:
    """Turns sent to the model: earlier messages minus failed user turns and empty replies."""
    turns = []
    for message in messages:
        if before_id is not None and message.id >= before_id:
            break
        if message.role == "user" and message.failed:
            continue
        if not message.content:
            continue
        turns.append((message.role, message.content))
    return turns


class TokenStream:

    def __init__(
        self,
        pipeline: "TokenPipeline",
        chat_id: str,
        stream_id: str,
        user_message_id: int,
        tokens: AsyncIterator[str],
        cancellation: CancellationToken,
    ):
        self.pipeline = pipeline
        self.chat_id = chat_id
        self.stream_id = stream_id
        self.user_message_id = user_message_id
        self.cancellation = cancellation
        self.outcome: Optional[str] = None
        self.assistant_message: Optional[Message] = None

        self._tokens = tokens
        self._backend_done = False
        self._first_piece: Optional[str] = None
        self._forwarded: List[str] = []

    @property
    def text(self) -> str:
        return "".join(self._forwarded)

    async def prime(self):
        """Wait for the first backend piece, or for a stop request if that comes first."""
        piece = asyncio.ensure_future(self._next_piece())
        stop = asyncio.ensure_future(self.cancellation.wait())
        try:
            await asyncio.wait({piece, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not piece.done():
                # 첫 토큰 전에 중지되면 모델 호출을 바로 끊는다
                piece.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await piece

        if piece.cancelled():
            await self._close_backend()
            self._finish(STOPPED)
            return
        self._first_piece = piece.result()

    async def body(self) -> AsyncIterator[str]:
        try:
            piece = self._first_piece
            self._first_piece = None

            while piece is not None:
                for char in piece:
                    if self.cancellation.cancelled:
                        break
                    self._forwarded.append(char)
                    yield char

                if self.cancellation.cancelled:
                    await self._close_backend()
                    self._finish(STOPPED)
                    return

                piece = await self._next_piece()

            self._finish(COMPLETED)
        except BackendError as e:
            logger.error(f"Stream {self.stream_id} failed mid-stream: {e.message}")
            self._finish(FAILED)
            # 종료 청크 없이 응답을 끊어야 클라이언트가 실패로 인식한다
            raise
        finally:
            self.close()
            await self._close_backend()

    async def finalize(self):
        """Response background task; covers bodies that were never iterated."""
        self.close()
        await self._close_backend()

    async def fail(self):
        self._finish(FAILED)
        await self._close_backend()

    def close(self):
        if self.outcome is None:
            self._finish(DISCONNECTED)
        self.pipeline.registry.deregister(self.stream_id)

    async def _next_piece(self) -> Optional[str]:
        if self._backend_done:
            return None

        timeout = self.pipeline.idle_timeout
        try:
            if timeout:
                return await asyncio.wait_for(self._tokens.__anext__(), timeout)
            return await self._tokens.__anext__()
        except StopAsyncIteration:
            self._backend_done = True
            return None
        except asyncio.TimeoutError:
            self._backend_done = True
            raise BackendError(f"Model produced no output for {timeout} seconds")
        except BackendError:
            self._backend_done = True
            raise
        except Exception as e:
            self._backend_done = True
            raise BackendError(f"Model backend failed: {e}") from e
        except BaseException:
            self._backend_done = True
            raise

    async def _close_backend(self):
        if self._backend_done:
            return
        self._backend_done = True
        aclose = getattr(self._tokens, "aclose", None)
        if aclose is not None:
            await aclose()

    def _finish(self, outcome: str):
        if self.outcome is not None:
            return
        self.outcome = outcome
        store = self.pipeline.store
        text = self.text

        try:
            if outcome == COMPLETED:
                self.assistant_message = store.create_message(self.chat_id, "assistant", text)
                logger.info(f"Stream {self.stream_id} completed ({len(text)} chars)")
            elif outcome in (STOPPED, DISCONNECTED):
                if text:
                    self.assistant_message = store.create_message(
                        self.chat_id, "assistant", text, stopped=True
                    )
                logger.info(f"Stream {self.stream_id} {outcome} after {len(text)} chars")
            elif outcome == FAILED:
                store.update_message(self.user_message_id, failed=True)
        except Exception:
            logger.exception(f"Could not persist outcome '{outcome}' of stream {self.stream_id}")
        finally:
            self.pipeline.registry.deregister(self.stream_id)


class TokenPipeline:

    def __init__(
        self,
        store: ChatStore,
        registry: StreamRegistry,
        backend: TokenBackend,
        idle_timeout: Optional[float] = None,
        title_max_length: int = 30,
    ):
        self.store = store
        self.registry = registry
        self.backend = backend
        self.idle_timeout = idle_timeout
        self.title_max_length = title_max_length

    async def open(self, chat_id: str, content: str, retry_message_id: Optional[int] = None) -> TokenStream:
        chat = self.store.get_chat_with_messages(chat_id)

        if retry_message_id is None:
            history = build_history(chat.messages)
            user_message = self.store.create_message(chat_id, "user", content)
            self._maybe_derive_title(chat, content)
        else:
            user_message = self._retry_target(chat, retry_message_id, content)
            history = build_history(chat.messages, before_id=user_message.id)
        history.append(("user", content))

        stream_id = generate_stream_id(chat_id)
        cancellation = CancellationToken()
        self.registry.register(stream_id, chat_id, cancellation)
        stream = TokenStream(
            self,
            chat_id,
            stream_id,
            user_message.id,
            self.backend.stream(history),
            cancellation,
        )
        logger.info(f"Stream {stream_id} opened for chat {chat_id} ({len(history)} turns)")

        try:
            await stream.prime()
        except BackendError as e:
            logger.error(f"Stream {stream_id} failed before first token: {e.message}")
            await stream.fail()
            raise BackendError(e.message, message_id=user_message.id) from e
        except asyncio.CancelledError:
            stream.close()
            raise

        if user_message.failed and stream.outcome is None:
            self.store.update_message(user_message.id, failed=False)
        return stream

    def _retry_target(self, chat: Chat, message_id: int, content: str) -> Message:
        for message in chat.messages:
            if message.id == message_id:
                break
        else:
            raise InvalidRetryError(f"Message {message_id} does not belong to chat {chat.id}")

        if message.role != "user" or not message.failed:
            raise InvalidRetryError(f"Message {message_id} is not a failed user message")
        if message.content != content:
            raise InvalidRetryError(f"Retry content does not match message {message_id}")
        return message

    def _maybe_derive_title(self, chat: Chat, content: str):
        if chat.title != self.store.default_title:
            return
        if any(message.role == "user" for message in chat.messages):
            return
        title = derive_title(content, self.title_max_length)
        if title:
            self.store.update_chat(chat.id, title)
