import json

import httpx
import pytest

from localchat.client.api import APIError, ChatAPI, MESSAGE_HEADER, STREAM_HEADER


def streaming_handler(chunks, status=200, headers=None, seen=None):
    async def body():
        for chunk in chunks:
            yield chunk

    def handler(request: httpx.Request):
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, headers=headers or {}, content=body())

    return handler


class Recorder:

    def __init__(self):
        self.events = []
        self.tokens = []
        self.completed = None
        self.error = None

    def on_token(self, char):
        self.events.append("token")
        self.tokens.append(char)

    def on_complete(self, text):
        self.events.append("complete")
        self.completed = text

    def on_error(self, error):
        self.events.append("error")
        self.error = error

    def on_stream_id(self, stream_id):
        self.events.append(f"stream:{stream_id}")

    def on_message_id(self, message_id):
        self.events.append(f"message:{message_id}")

    async def run(self, api, content="hi", **kwargs):
        await api.send_and_stream(
            "chat-1",
            content,
            self.on_token,
            self.on_complete,
            self.on_error,
            on_stream_id=self.on_stream_id,
            on_message_id=self.on_message_id,
            **kwargs,
        )


@pytest.mark.asyncio
async def test_tokens_fire_once_per_character_in_order():
    headers = {STREAM_HEADER: "chat-1-1", MESSAGE_HEADER: "3"}
    transport = httpx.MockTransport(streaming_handler([b"Hel", b"lo", b" there"], headers=headers))
    recorder = Recorder()

    async with ChatAPI(base_url="http://test", transport=transport) as api:
        await recorder.run(api)

    assert recorder.tokens == list("Hello there")
    assert recorder.completed == "Hello there"
    assert recorder.error is None
    # 헤더 콜백은 본문보다 먼저
    assert recorder.events[:2] == ["message:3", "stream:chat-1-1"]
    assert recorder.events[-1] == "complete"


@pytest.mark.asyncio
async def test_multibyte_characters_split_across_chunks():
    transport = httpx.MockTransport(streaming_handler([b"caf", b"\xc3", b"\xa9!"]))
    recorder = Recorder()

    async with ChatAPI(base_url="http://test", transport=transport) as api:
        await recorder.run(api)

    assert recorder.tokens == ["c", "a", "f", "é", "!"]
    assert recorder.completed == "café!"


@pytest.mark.asyncio
async def test_truncated_utf8_reports_error():
    transport = httpx.MockTransport(streaming_handler([b"ok", b"\xc3"]))
    recorder = Recorder()

    async with ChatAPI(base_url="http://test", transport=transport) as api:
        await recorder.run(api)

    assert recorder.tokens == ["o", "k"]
    assert isinstance(recorder.error, UnicodeDecodeError)
    assert recorder.completed is None


@pytest.mark.asyncio
async def test_structured_error_is_passed_to_on_error():
    payload = {"success": False, "message": "Model backend failed", "error": "BACKEND_ERROR", "messageId": 7}

    def handler(request):
        return httpx.Response(502, json=payload)

    recorder = Recorder()
    async with ChatAPI(base_url="http://test", transport=httpx.MockTransport(handler)) as api:
        await recorder.run(api)

    assert recorder.events == ["error"]
    assert recorder.error.status == 502
    assert recorder.error.payload["messageId"] == 7
    assert recorder.error.message == "Model backend failed"


@pytest.mark.asyncio
async def test_network_failure_is_an_api_error_without_status():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    recorder = Recorder()
    async with ChatAPI(base_url="http://test", transport=httpx.MockTransport(handler)) as api:
        await recorder.run(api)

    assert isinstance(recorder.error, APIError)
    assert recorder.error.is_network_error


@pytest.mark.asyncio
async def test_retry_message_id_is_sent():
    seen = []
    transport = httpx.MockTransport(streaming_handler([b"ok"], seen=seen))

    async with ChatAPI(base_url="http://test", transport=transport) as api:
        await Recorder().run(api, content="hello", retry_message_id=4)

    assert json.loads(seen[0].content) == {"content": "hello", "role": "user", "retryMessageId": 4}
    assert seen[0].url.path == "/chat/chat-1/message"


@pytest.mark.asyncio
async def test_stop_stream_posts_stream_id():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"success": True, "stoppedCount": 1})

    async with ChatAPI(base_url="http://test", transport=httpx.MockTransport(handler)) as api:
        response = await api.stop_stream("chat-1", "chat-1-99")

    assert response["stoppedCount"] == 1
    assert seen[0].url.path == "/chat/chat-1/stop"
    assert json.loads(seen[0].content) == {"streamId": "chat-1-99"}


@pytest.mark.asyncio
async def test_not_found_raises_api_error():
    def handler(request):
        return httpx.Response(404, json={"success": False, "message": "Chat x not found", "error": "CHAT_NOT_FOUND"})

    async with ChatAPI(base_url="http://test", transport=httpx.MockTransport(handler)) as api:
        with pytest.raises(APIError) as exc_info:
            await api.get_chat("x")

    assert exc_info.value.is_not_found
    assert exc_info.value.message == "Chat x not found"


@pytest.mark.asyncio
async def test_body_cut_off_mid_stream_is_reported_as_failure():
    async def body():
        yield b"ab"
        raise httpx.RemoteProtocolError("peer closed connection without sending complete message body")

    def handler(request):
        return httpx.Response(200, headers={STREAM_HEADER: "chat-1-1", MESSAGE_HEADER: "3"}, content=body())

    recorder = Recorder()
    async with ChatAPI(base_url="http://test", transport=httpx.MockTransport(handler)) as api:
        await recorder.run(api)

    assert recorder.tokens == ["a", "b"]
    assert recorder.completed is None
    assert recorder.events[-1] == "error"
    assert recorder.error.status == 200
    assert not recorder.error.is_network_error
    assert recorder.error.payload["error"] == "STREAM_INTERRUPTED"
