"""Domain errors shared by the API, streaming and storage layers.

Everything raised across module boundaries derives from ``LocalChatError`` so
the API layer can turn it into a structured ``{"success": false, ...}`` body
with a single exception handler.
"""


class LocalChatError(Exception):
    """Base error.

    Attributes:
        code: machine readable error code (e.g. ``"CHAT_NOT_FOUND"``).
        message: human readable message.
        http_status: status used when the error reaches the HTTP layer.
        extra: additional fields merged into the error response.
    """

    code = "LOCALCHAT_ERROR"
    http_status = 500

    def __init__(self, message: str, code: str | None = None, http_status: int | None = None, **extra):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ChatNotFoundError(LocalChatError):
    code = "CHAT_NOT_FOUND"
    http_status = 404

    def __init__(self, chat_id: str):
        super().__init__(f"Chat {chat_id} not found", chat_id=chat_id)


class MessageNotFoundError(LocalChatError):
    code = "MESSAGE_NOT_FOUND"
    http_status = 404

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} not found", message_id=message_id)


class InvalidRetryError(LocalChatError):
    """A retry referenced a message that is not a failed user message of the chat."""

    code = "INVALID_RETRY"
    http_status = 409


class BackendError(LocalChatError):
    """The text-generation backend failed or timed out."""

    code = "BACKEND_ERROR"
    http_status = 502


class DuplicateStreamError(LocalChatError):
    code = "DUPLICATE_STREAM"
    http_status = 409

    def __init__(self, stream_id: str):
        super().__init__(f"Stream {stream_id} is already registered", stream_id=stream_id)
