"""Text-generation backend.

The local model (Ollama by default) is reached through its OpenAI-compatible
``/v1`` endpoint with LangChain's ``ChatOpenAI``. The rest of the app only
depends on ``TokenBackend``: given ordered ``(role, content)`` turns, return an
async iterator of text pieces that can be closed to abort generation.
"""

from typing import AsyncIterator, Iterable, List, Optional, Protocol, Tuple, runtime_checkable

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from localchat.core.config import settings
from localchat.core.exceptions import BackendError
from localchat.core.logger import get_logger

logger = get_logger(__name__)

Turn = Tuple[str, str]


@runtime_checkable
class TokenBackend(Protocol):

    def stream(self, turns: List[Turn]) -> AsyncIterator[str]:
        ...


def get_llm() -> ChatOpenAI:
    llm_settings = settings["llm"]
    return ChatOpenAI(
        model=llm_settings["model"],
        base_url=llm_settings["base_url"],
        api_key=llm_settings.get("api_key") or "ollama",
        temperature=llm_settings.get("temperature", 0.7),
        max_retries=llm_settings.get("retry", 0),
    )


def to_langchain_messages(turns: Iterable[Turn], system_prompt: Optional[str] = None) -> List[BaseMessage]:
    messages: List[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))

    for role, content in turns:
        if role == "user":
            messages.append(HumanMessage(content=content))
        elif role == "assistant":
            messages.append(AIMessage(content=content))
        else:
            # 알 수 없는 role은 건너뜀
            logger.warning(f"Skipping turn with unknown role: {role}")

    return messages


class ChatBackend:
    """``TokenBackend`` over a LangChain chat model."""

    def __init__(self, llm=None, system_prompt: Optional[str] = None):
        self._llm = llm
        self.system_prompt = system_prompt

    @property
    def llm(self):
        if self._llm is None:
            self._llm = get_llm()
        return self._llm

    @classmethod
    def from_settings(cls) -> "ChatBackend":
        return cls(system_prompt=settings["llm"].get("system_prompt"))

    def stream(self, turns: List[Turn]) -> AsyncIterator[str]:
        messages = to_langchain_messages(turns, self.system_prompt)

        async def _stream() -> AsyncIterator[str]:
            chunks = None
            try:
                chunks = self.llm.astream(messages)
                async for chunk in chunks:
                    content = chunk.content
                    if isinstance(content, str) and content:
                        yield content
            except Exception as e:
                logger.error(f"Model backend error: {e}")
                raise BackendError(f"Model backend failed: {e}") from e
            finally:
                # 중단 시 모델 HTTP 스트림도 바로 닫는다
                if chunks is not None and hasattr(chunks, "aclose"):
                    await chunks.aclose()

        return _stream()
