"""
Read-Receipt Tracker.
"""

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wavehub.presence import ConnectionState, Delivery
from wavehub.schemas import ChatFrame, MessageReadEvent
from wavehub.storage import advance_read_cursor, get_chat_by_uuid, get_messages_from_others

logger = logging.getLogger(__name__)


class ReadReceiptTracker:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        delivery: Delivery,
        clock: Callable[[], datetime],
    ):
        self._session_factory = session_factory
        self._delivery = delivery
        self._clock = clock

    async def mark_read(self, state: ConnectionState, frame: ChatFrame) -> None:
        """
        Advance the reader's cursor and tell each other sender, once, which of
        their messages is now the newest one read.
        """
        try:
            with self._session_factory() as db:
                chat = get_chat_by_uuid(db, frame.chat_id)
                if chat is None:
                    logger.warning(f"mark_read: chat not found: {frame.chat_id}")
                    return
                advance_read_cursor(db, chat.id, state.user_id, self._clock())
                messages = get_messages_from_others(db, chat.id, state.user_id)
        except SQLAlchemyError as e:
            logger.error(f"mark_read failed for chat {frame.chat_id}: {e}")
            return

        logger.info(f"User {state.username} read chat {frame.chat_id}, {len(messages)} message(s) from others")

        # newest first, so the first row per sender is the one to report
        notified = set()
        for message_id, sender_id in messages:
            if sender_id in notified:
                continue
            notified.add(sender_id)
            event = MessageReadEvent(chat_id=frame.chat_id, message_id=str(message_id), read_by=state.user_id)
            if await self._delivery.send_to_user(sender_id, event):
                logger.debug(f"Notified user {sender_id} that message {message_id} was read")
