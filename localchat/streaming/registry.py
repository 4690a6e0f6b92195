"""In-flight generation streams, keyed by stream id.

One ``StreamRegistry`` is created per process (see the app lifespan) and
shared by the message-send and stop handlers. All mutations run on the event
loop thread, so the plain dict needs no lock.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from localchat.core.exceptions import DuplicateStreamError
from localchat.core.logger import get_logger
from localchat.streaming.cancellation import CancellationToken

logger = get_logger(__name__)


@dataclass
class StreamHandle:
    stream_id: str
    chat_id: str
    token: CancellationToken = field(default_factory=CancellationToken)


class StreamRegistry:

    def __init__(self):
        self._handles: Dict[str, StreamHandle] = {}

    def __len__(self):
        return len(self._handles)

    def __contains__(self, stream_id: str):
        return stream_id in self._handles

    def register(self, stream_id: str, chat_id: str, token: CancellationToken) -> StreamHandle:
        if stream_id in self._handles:
            raise DuplicateStreamError(stream_id)
        handle = StreamHandle(stream_id=stream_id, chat_id=chat_id, token=token)
        self._handles[stream_id] = handle
        logger.debug(f"Stream registered: {stream_id} (chat {chat_id})")
        return handle

    def cancel(self, stream_id: str, chat_id: Optional[str] = None) -> bool:
        """Trigger and drop the handle; with ``chat_id``, only if the stream belongs to that chat."""
        handle = self._handles.get(stream_id)
        if handle is None or (chat_id is not None and handle.chat_id != chat_id):
            return False
        del self._handles[stream_id]
        handle.token.cancel()
        logger.info(f"Stream cancelled: {stream_id}")
        return True

    def cancel_all_for_chat(self, chat_id: str) -> int:
        stream_ids = [h.stream_id for h in self._handles.values() if h.chat_id == chat_id]
        return sum(1 for stream_id in stream_ids if self.cancel(stream_id))

    def cancel_all(self) -> int:
        return sum(1 for stream_id in list(self._handles) if self.cancel(stream_id))

    def deregister(self, stream_id: str) -> None:
        if self._handles.pop(stream_id, None) is not None:
            logger.debug(f"Stream deregistered: {stream_id}")

    def active_streams(self, chat_id: Optional[str] = None) -> List[str]:
        return [
            h.stream_id for h in self._handles.values()
            if chat_id is None or h.chat_id == chat_id
        ]
