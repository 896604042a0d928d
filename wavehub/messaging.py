"""
Message Relay, typing indicators and chat presence tracking.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wavehub.membership import ChatMembershipResolver
from wavehub.metrics import record_message_relayed
from wavehub.presence import ConnectionRegistry, ConnectionState, Delivery, PresenceDirectory
from wavehub.schemas import (
    ChatFrame,
    LeaveChatFrame,
    MessageEvent,
    MessagePayload,
    MessageSentEvent,
    MessageStatus,
    SendMessageFrame,
    StoppedTypingEvent,
    TypingEvent,
)
from wavehub.storage import (
    advance_read_cursor,
    create_message,
    get_chat_by_uuid,
    update_chat_last_message,
    update_message_status,
)

logger = logging.getLogger(__name__)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with Z suffix, e.g. 2025-01-15T10:00:00Z."""
    return value.replace(microsecond=0).isoformat() + "Z"


class MessageRelay:
    """
    Persists chat messages and fans them out to participants' live connections.

    Delivery to offline participants is not queued; the stored row is the only
    durable record and is picked up by the history endpoint.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        registry: ConnectionRegistry,
        directory: PresenceDirectory,
        delivery: Delivery,
        membership: ChatMembershipResolver,
        clock: Callable[[], datetime],
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._directory = directory
        self._delivery = delivery
        self._membership = membership
        self._clock = clock

    def initial_status(
        self, sender_id: int, chat_uuid: str, participant_ids: List[int]
    ) -> Tuple[MessageStatus, Optional[int]]:
        """
        Decide the status of a new message from recipient presence.

        Only the first other participant with a live connection counts:
        viewing the chat -> read, connected -> delivered, nobody -> sent.

        Returns:
            (status, reader user id when status is read)
        """
        for participant_id in participant_ids:
            if participant_id == sender_id:
                continue
            connection_id = self._directory.connection_for(participant_id)
            if connection_id is None:
                continue
            state = self._registry.get(connection_id)
            if state is not None and state.current_chat_id == chat_uuid:
                return MessageStatus.READ, participant_id
            return MessageStatus.DELIVERED, None
        return MessageStatus.SENT, None

    async def send_message(self, state: ConnectionState, frame: SendMessageFrame) -> None:
        now = self._clock()

        try:
            participant_ids = self._membership.participants(frame.chat_id)
            with self._session_factory() as db:
                chat = get_chat_by_uuid(db, frame.chat_id)
                if chat is None:
                    logger.warning(f"send_message: chat not found: {frame.chat_id}")
                    return

                message = create_message(
                    db,
                    chat_id=chat.id,
                    sender_id=state.user_id,
                    content=frame.content,
                    message_type=frame.message_type,
                    now=now,
                )
                message_id = message.id

                status, reader_id = self.initial_status(state.user_id, frame.chat_id, participant_ids)
                if status is MessageStatus.READ:
                    advance_read_cursor(db, chat.id, reader_id, now)
                if status is not MessageStatus.SENT:
                    update_message_status(db, message_id, status.value)
        except SQLAlchemyError as e:
            logger.error(f"send_message: failed to store message in chat {frame.chat_id}: {e}")
            return

        logger.info(f"Message {message_id} from {state.username} in chat {frame.chat_id}, initial status: {status.value}")
        record_message_relayed(status.value)

        payload = MessagePayload(
            id=str(message_id),
            chat_id=frame.chat_id,
            sender_id=str(state.user_id),
            sender_name=state.username,
            content=frame.content,
            timestamp=format_timestamp(now),
            type=frame.message_type,
            status=status,
        )

        sent_count = 0
        for participant_id in participant_ids:
            if participant_id == state.user_id:
                event = MessageSentEvent(temp_id=frame.temp_id, message=payload)
            else:
                event = MessageEvent(message=payload)
            if await self._delivery.send_to_user(participant_id, event):
                sent_count += 1
            else:
                logger.debug(f"User {participant_id} not connected, message {message_id} left in history")
        logger.info(f"Message {message_id} delivered to {sent_count} connection(s)")

        try:
            with self._session_factory() as db:
                update_chat_last_message(db, frame.chat_id, frame.content, now)
        except SQLAlchemyError as e:
            logger.error(f"Failed to update last message of chat {frame.chat_id}: {e}")

    async def typing(self, state: ConnectionState, frame: ChatFrame, is_typing: bool) -> None:
        """Fan out typing/stopped_typing to the other live participants."""
        try:
            participant_ids = self._membership.participants(frame.chat_id)
        except SQLAlchemyError as e:
            logger.error(f"Typing indicator dropped, participants of {frame.chat_id} unavailable: {e}")
            return

        if is_typing:
            event = TypingEvent(chat_id=frame.chat_id, user_id=state.user_id, user_name=state.username)
        else:
            event = StoppedTypingEvent(chat_id=frame.chat_id, user_id=state.user_id)

        others = [user_id for user_id in participant_ids if user_id != state.user_id]
        await self._delivery.send_to_users(others, event)

    def join_chat(self, state: ConnectionState, frame: ChatFrame) -> None:
        state.current_chat_id = frame.chat_id
        logger.info(f"User {state.username} opened chat {frame.chat_id}")

    def leave_chat(self, state: ConnectionState, frame: LeaveChatFrame) -> None:
        state.current_chat_id = None
        logger.info(f"User {state.username} left chat")
