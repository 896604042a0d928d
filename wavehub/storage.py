import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from wavehub.config import settings

logger = logging.getLogger(__name__)


def _connect_args(url: str) -> dict:
    # SQLite connections are handed between the event loop and worker threads
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

REQUIRED_TABLES = ("users", "chats", "chat_participants", "messages", "calls")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def init_db(bind=None) -> None:
    """
    Create all tables that do not exist yet.
    Called during application startup.
    """
    bind = bind if bind is not None else engine
    logger.debug(f"Initializing database with URL: {bind.url}")
    try:
        # Import models to register them with Base.metadata
        from wavehub import models  # noqa: F401

        Base.metadata.create_all(bind=bind)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and the schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# User Store
# =============================================================================

def get_user(db: Session, user_id: int):
    """Return the User row for user_id, or None."""
    from wavehub.models import User

    return db.query(User).filter(User.id == user_id).first()


def set_user_online(db: Session, user_id: int, is_online: bool, now: datetime) -> None:
    """Update is_online and last_seen for a user."""
    from wavehub.models import User

    db.query(User).filter(User.id == user_id).update(
        {User.is_online: is_online, User.last_seen: now},
        synchronize_session=False,
    )
    db.commit()
    logger.debug(f"User {user_id} marked {'online' if is_online else 'offline'}")


# =============================================================================
# Chat Store
# =============================================================================

def get_chat_by_uuid(db: Session, chat_uuid: str):
    """Return the Chat row addressed by chat_uuid, or None."""
    from wavehub.models import Chat

    return db.query(Chat).filter(Chat.chat_uuid == chat_uuid).first()


def get_chat_participant_ids(db: Session, chat_uuid: str) -> List[int]:
    """
    List participant user ids of a chat.

    Returns:
        User ids in membership order; empty if the chat does not exist.
    """
    from wavehub.models import Chat, ChatParticipant

    rows = (
        db.query(ChatParticipant.user_id)
        .join(Chat, Chat.id == ChatParticipant.chat_id)
        .filter(Chat.chat_uuid == chat_uuid)
        .order_by(ChatParticipant.id.asc())
        .all()
    )
    return [row.user_id for row in rows]


def get_related_user_ids(db: Session, user_id: int) -> List[int]:
    """
    List every user sharing at least one chat with user_id (excluding user_id).
    """
    from wavehub.models import ChatParticipant

    own_chats = db.query(ChatParticipant.chat_id).filter(ChatParticipant.user_id == user_id)
    rows = (
        db.query(ChatParticipant.user_id)
        .filter(ChatParticipant.chat_id.in_(own_chats.scalar_subquery()))
        .filter(ChatParticipant.user_id != user_id)
        .distinct()
        .order_by(ChatParticipant.user_id.asc())
        .all()
    )
    return [row.user_id for row in rows]


def create_message(
    db: Session,
    chat_id: int,
    sender_id: int,
    content: str,
    message_type: str,
    now: datetime,
):
    """
    Append a message with the initial status 'sent'.

    Returns:
        The persisted Message row (id populated).
    """
    from wavehub.models import Message

    message = Message(
        chat_id=chat_id,
        sender_id=sender_id,
        content=content,
        type=message_type,
        status="sent",
        is_deleted=False,
        created_at=now,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    logger.info(f"Message stored: id={message.id}, chat_id={chat_id}, sender={sender_id}")
    return message


def update_message_status(db: Session, message_id: int, status: str) -> None:
    from wavehub.models import Message

    db.query(Message).filter(Message.id == message_id).update(
        {Message.status: status}, synchronize_session=False
    )
    db.commit()


def update_chat_last_message(db: Session, chat_uuid: str, content: str, now: datetime) -> None:
    """Refresh the last-message summary shown in chat listings."""
    from wavehub.models import Chat

    db.query(Chat).filter(Chat.chat_uuid == chat_uuid).update(
        {Chat.last_message: content, Chat.last_message_at: now},
        synchronize_session=False,
    )
    db.commit()


def advance_read_cursor(db: Session, chat_id: int, user_id: int, now: datetime) -> bool:
    """
    Move a participant's read cursor to now.

    Returns:
        True if a participant row was updated.
    """
    from wavehub.models import ChatParticipant

    updated = (
        db.query(ChatParticipant)
        .filter(ChatParticipant.chat_id == chat_id, ChatParticipant.user_id == user_id)
        .update({ChatParticipant.last_read_at: now}, synchronize_session=False)
    )
    db.commit()
    return updated > 0


def get_messages_from_others(db: Session, chat_id: int, reader_id: int) -> List[Tuple[int, int]]:
    """
    List (message_id, sender_id) of not-deleted messages in a chat authored
    by anyone but reader_id, newest first.
    """
    from wavehub.models import Message

    rows = (
        db.query(Message.id, Message.sender_id)
        .filter(
            Message.chat_id == chat_id,
            Message.sender_id != reader_id,
            Message.is_deleted.is_(False),
        )
        .order_by(Message.created_at.desc(), Message.id.desc())
        .all()
    )
    return [(row.id, row.sender_id) for row in rows]


# =============================================================================
# Call Store
# =============================================================================

def create_call(
    db: Session,
    call_uuid: str,
    chat_id: int,
    caller_id: int,
    receiver_id: int,
    call_type: str,
    now: datetime,
) -> bool:
    """
    Insert a pending call row.

    Returns:
        True if created, False if call_uuid already exists.
    """
    from wavehub.models import Call

    try:
        db.add(Call(
            call_uuid=call_uuid,
            chat_id=chat_id,
            caller_id=caller_id,
            receiver_id=receiver_id,
            call_type=call_type,
            status="pending",
            started_at=now,
        ))
        db.commit()
        logger.info(f"Call stored: {call_uuid} ({call_type}) {caller_id} -> {receiver_id}")
        return True
    except IntegrityError:
        db.rollback()
        logger.error(f"Call {call_uuid} already exists, offer not recorded")
        return False


def get_call(db: Session, call_uuid: str):
    """Return the Call row for call_uuid, or None."""
    from wavehub.models import Call

    return db.query(Call).filter(Call.call_uuid == call_uuid).first()


def update_call(db: Session, call_uuid: str, **fields) -> None:
    """
    Overwrite columns of a call row. Last write wins; there is no version check.
    """
    from wavehub.models import Call

    values = {getattr(Call, name): value for name, value in fields.items()}
    db.query(Call).filter(Call.call_uuid == call_uuid).update(values, synchronize_session=False)
    db.commit()
