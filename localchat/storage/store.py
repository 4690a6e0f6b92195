from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

from localchat.core.exceptions import ChatNotFoundError, MessageNotFoundError
from localchat.core.logger import get_logger
from localchat.core.utils import utcnow
from localchat.storage.models import Base, Chat, Message

logger = get_logger(__name__)

DEFAULT_TITLE = "New Chat"


def create_db_engine(database_url: str, echo: bool = False):
    kwargs = {"echo": echo}
    if database_url.startswith("sqlite"):
        # 요청 핸들러(스레드풀)와 이벤트 루프가 같은 커넥션을 공유한다
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


class ChatStore:
    """Chat/message persistence. Every public call is its own transaction.

    Returned ORM objects are detached; only ``get_chat_with_messages`` loads
    the ``messages`` relationship.
    """

    def __init__(self, database_url: str, echo: bool = False, default_title: str = DEFAULT_TITLE):
        self.engine = create_db_engine(database_url, echo=echo)
        self.default_title = default_title
        Base.metadata.create_all(self.engine)
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def session(self) -> Iterator[Session]:
        with self._sessionmaker() as session:
            with session.begin():
                yield session

    def close(self):
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    def create_chat(self, title: Optional[str] = None) -> Chat:
        chat = Chat(title=(title or "").strip() or self.default_title)
        with self.session() as session:
            session.add(chat)
        logger.info(f"Chat created: {chat.id} ({chat.title!r})")
        return chat

    def list_chats(self) -> List[Chat]:
        with self.session() as session:
            rows = session.scalars(
                select(Chat).order_by(Chat.updated_at.desc(), Chat.created_at.desc())
            )
            return list(rows)

    def get_chat(self, chat_id: str) -> Chat:
        with self.session() as session:
            chat = session.get(Chat, chat_id)
            if chat is None:
                raise ChatNotFoundError(chat_id)
            return chat

    def get_chat_with_messages(self, chat_id: str) -> Chat:
        with self.session() as session:
            chat = session.scalar(
                select(Chat).options(selectinload(Chat.messages)).where(Chat.id == chat_id)
            )
            if chat is None:
                raise ChatNotFoundError(chat_id)
            return chat

    def update_chat(self, chat_id: str, title: str) -> Chat:
        with self.session() as session:
            chat = session.get(Chat, chat_id)
            if chat is None:
                raise ChatNotFoundError(chat_id)
            chat.title = title.strip() or self.default_title
            chat.updated_at = utcnow()
        logger.info(f"Chat renamed: {chat_id} -> {chat.title!r}")
        return chat

    def delete_chat(self, chat_id: str) -> None:
        with self.session() as session:
            chat = session.get(Chat, chat_id)
            if chat is None:
                raise ChatNotFoundError(chat_id)
            session.delete(chat)
        logger.info(f"Chat deleted: {chat_id}")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def create_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        failed: bool = False,
        stopped: bool = False,
    ) -> Message:
        with self.session() as session:
            chat = session.get(Chat, chat_id)
            if chat is None:
                raise ChatNotFoundError(chat_id)
            message = Message(
                chat_id=chat_id,
                role=role,
                content=content,
                failed=failed,
                stopped=stopped,
            )
            session.add(message)
            chat.updated_at = utcnow()
        return message

    def get_message(self, message_id: int) -> Message:
        with self.session() as session:
            message = session.get(Message, message_id)
            if message is None:
                raise MessageNotFoundError(str(message_id))
            return message

    def update_message(self, message_id: int, **fields) -> Message:
        with self.session() as session:
            message = session.get(Message, message_id)
            if message is None:
                raise MessageNotFoundError(str(message_id))
            for key, value in fields.items():
                setattr(message, key, value)
        return message
