"""HTTP client for the chat server, including the streaming consumer.

``send_and_stream`` never raises: every failure is reported through the
``on_error`` callback so the caller's state machine has a single exit path.
"""

import codecs
import json
from typing import Any, Callable, Dict, Optional

import httpx

from localchat.core.config import settings
from localchat.core.logger import get_logger

logger = get_logger(__name__)

STREAM_HEADER = settings["stream"]["header"]
MESSAGE_HEADER = settings["stream"]["message_header"]


class APIError(Exception):
    """Request failed at the HTTP level (``status`` set) or never reached the server."""

    def __init__(self, message: str, status: Optional[int] = None, payload: Optional[Dict[str, Any]] = None):
        self.message = message
        self.status = status
        self.payload = payload or {}
        super().__init__(message)

    @property
    def is_network_error(self) -> bool:
        return self.status is None

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


def _error_from_response(response: httpx.Response, body: bytes) -> APIError:
    try:
        payload = json.loads(body or b"null")
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        payload = {}
    message = payload.get("message") or f"HTTP {response.status_code}: {response.reason_phrase}"
    return APIError(message, status=response.status_code, payload=payload)


class ChatAPI:

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        client_settings = settings["client"]
        self._client = httpx.AsyncClient(
            base_url=base_url or client_settings["base_url"],
            # 스트림은 토큰 사이 대기가 길 수 있으므로 read 타임아웃 없음
            timeout=httpx.Timeout(timeout or client_settings["timeout"], read=None),
            transport=transport,
        )

    async def aclose(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"API Error - {method} {url}: {e}")
            raise APIError(str(e) or e.__class__.__name__) from e

        if response.is_error:
            raise _error_from_response(response, response.content)
        return response.json()

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    async def create_chat(self, title: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("POST", "/chat", json={"title": title})

    async def get_chats(self) -> Dict[str, Any]:
        return await self._request("GET", "/chats")

    async def get_chat(self, chat_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/chats/{chat_id}")

    async def update_chat(self, chat_id: str, title: str) -> Dict[str, Any]:
        return await self._request("PUT", f"/chats/{chat_id}", json={"title": title})

    async def delete_chat(self, chat_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/chats/{chat_id}")

    async def stop_stream(self, chat_id: str, stream_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("POST", f"/chat/{chat_id}/stop", json={"streamId": stream_id})

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def send_and_stream(
        self,
        chat_id: str,
        content: str,
        on_token: Callable[[str], None],
        on_complete: Callable[[str], None],
        on_error: Callable[[Exception], None],
        on_stream_id: Optional[Callable[[str], None]] = None,
        on_message_id: Optional[Callable[[int], None]] = None,
        retry_message_id: Optional[int] = None,
    ) -> None:
        """Send ``content`` and feed the streamed reply to the callbacks, one character at a time."""
        body = {"content": content, "role": "user"}
        if retry_message_id is not None:
            body["retryMessageId"] = retry_message_id

        try:
            async with self._client.stream(
                "POST",
                f"/chat/{chat_id}/message",
                json=body,
                headers={"Accept": "text/plain"},
            ) as response:
                if response.is_error:
                    raise _error_from_response(response, await response.aread())

                message_id = response.headers.get(MESSAGE_HEADER)
                if message_id and on_message_id:
                    on_message_id(int(message_id))

                stream_id = response.headers.get(STREAM_HEADER)
                if stream_id and on_stream_id:
                    on_stream_id(stream_id)

                try:
                    full_response = await self._consume(response, on_token)
                except httpx.TransportError as e:
                    # 종료 청크 없이 끊긴 본문은 서버 쪽 실패
                    raise APIError(
                        "The reply was interrupted before it finished",
                        status=response.status_code,
                        payload={"error": "STREAM_INTERRUPTED"},
                    ) from e
        except APIError as e:
            logger.error(f"API Error - sendAndStream: {e.message}")
            on_error(e)
            return
        except httpx.TransportError as e:
            logger.error(f"API Error - sendAndStream: {e}")
            on_error(APIError(str(e) or e.__class__.__name__))
            return
        except (httpx.HTTPError, ValueError) as e:
            # ValueError covers UnicodeDecodeError
            logger.error(f"API Error - sendAndStream: {e}")
            on_error(e)
            return

        on_complete(full_response)

    @staticmethod
    async def _consume(response: httpx.Response, on_token: Callable[[str], None]) -> str:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="strict")
        parts = []

        async for raw in response.aiter_bytes():
            text = decoder.decode(raw)
            for char in text:
                parts.append(char)
                on_token(char)

        tail = decoder.decode(b"", final=True)
        for char in tail:
            parts.append(char)
            on_token(char)

        return "".join(parts)
