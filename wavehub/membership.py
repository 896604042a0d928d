"""
Chat Membership Resolver.

Resolves chat participants and co-participants from the chat store. Errors
from the store propagate as SQLAlchemyError; callers decide how to degrade.
"""

import logging
from typing import Callable, List

from sqlalchemy.orm import Session

from wavehub.storage import get_chat_participant_ids, get_related_user_ids

logger = logging.getLogger(__name__)


class ChatMembershipResolver:

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def participants(self, chat_uuid: str) -> List[int]:
        """User ids of every participant of a chat, empty if unknown."""
        with self._session_factory() as db:
            participant_ids = get_chat_participant_ids(db, chat_uuid)
        logger.debug(f"Chat {chat_uuid} participants: {participant_ids}")
        return participant_ids

    def related_users(self, user_id: int) -> List[int]:
        """User ids sharing at least one chat with user_id."""
        with self._session_factory() as db:
            return get_related_user_ids(db, user_id)
