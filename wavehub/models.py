"""
SQLAlchemy ORM models for the tables shared with the REST API.

The hub reads users, chats and participants, appends messages and owns
the call rows created by signaling. For wire frames, see schemas.py.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from wavehub.storage import Base


class User(Base):
    """
    Registered account. is_online/last_seen are maintained by the hub.

    Table: users
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String, nullable=False, unique=True)
    email = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    is_online = Column(Boolean, nullable=False, default=False)
    last_seen = Column(DateTime, nullable=True)


class Chat(Base):
    """
    Conversation. Clients address chats by chat_uuid.

    Table: chats
    """
    __tablename__ = "chats"

    id = Column(Integer, primary_key=True)
    chat_uuid = Column(String, nullable=False, unique=True, index=True)
    last_message = Column(Text, nullable=True)
    last_message_at = Column(DateTime, nullable=True)


class ChatParticipant(Base):
    """
    Membership row and read cursor of one user in one chat.

    Table: chat_participants
    """
    __tablename__ = "chat_participants"
    __table_args__ = (UniqueConstraint("chat_id", "user_id"),)

    id = Column(Integer, primary_key=True)
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    last_read_at = Column(DateTime, nullable=True)


class Message(Base):
    """
    Chat message. status is the initial delivery status computed at send time;
    later read state is derived from chat_participants.last_read_at.

    Table: messages
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    type = Column(String, nullable=False, default="text")
    status = Column(String, nullable=False, default="sent")
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, index=True)


class Call(Base):
    """
    Signaling record of a two-party call.

    Table: calls
    Unique key: call_uuid (client supplied callId)
    status: pending -> active -> ended, or pending -> declined
    """
    __tablename__ = "calls"

    id = Column(Integer, primary_key=True, autoincrement=True)
    call_uuid = Column(String, nullable=False, unique=True, index=True)
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False)
    caller_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    call_type = Column(String, nullable=False, default="audio")
    status = Column(String, nullable=False, default="pending")
    started_at = Column(DateTime, nullable=False)
    connected_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    duration = Column(Integer, nullable=True)  # seconds
    end_reason = Column(String, nullable=True)
