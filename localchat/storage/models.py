import uuid

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, ForeignKey, Text, Index
)
from sqlalchemy.orm import declarative_base, relationship

from localchat.core.utils import utcnow

Base = declarative_base()


def _new_chat_id() -> str:
    return str(uuid.uuid4())


class Chat(Base):
    __tablename__ = "chats"
    id = Column(String(36), primary_key=True, default=_new_chat_id)
    title = Column(String(200), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    # id 순서 = 대화 순서
    messages = relationship(
        "Message",
        back_populates="chat",
        cascade="all, delete-orphan",
        order_by="Message.id",
    )

    __table_args__ = (Index("ix_chats_updated_at", "updated_at"),)


class Message(Base):
    __tablename__ = "messages"
    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    role = Column(String(16), nullable=False)          # "user" | "assistant"
    content = Column(Text, nullable=False, default="")
    failed = Column(Boolean, default=False, nullable=False)   # user turn without a reply
    stopped = Column(Boolean, default=False, nullable=False)  # partial reply, stopped by user
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    chat = relationship("Chat", back_populates="messages")

    __table_args__ = (Index("ix_messages_chat_id", "chat_id", "id"),)
