"""
Call Signaling State Machine.

Relays WebRTC offer/answer/ICE/end/decline between the two parties of a call
and records the lifecycle in the calls table:

    pending --answer--> active --end--> ended
       |                                  ^
       +-----------------end--------------+
       +--decline--> declined

Transitions are last-write-wins. Rows already ended or declined are not
mutated again. The "other party" is always derived from the stored row.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wavehub.metrics import record_call_transition
from wavehub.presence import ConnectionState, Delivery, PresenceDirectory
from wavehub.schemas import (
    TERMINAL_CALL_STATUSES,
    CallAnswerEvent,
    CallAnswerFrame,
    CallDeclineFrame,
    CallDeclinedEvent,
    CallEndedEvent,
    CallEndFrame,
    CallErrorEvent,
    CallIceCandidateEvent,
    CallIceCandidateFrame,
    CallOfferEvent,
    CallOfferFrame,
    CallOfferSentEvent,
    CallStatus,
    ErrorEvent,
)
from wavehub.storage import create_call, get_call, get_chat_by_uuid, get_user, update_call

logger = logging.getLogger(__name__)

RECEIVER_OFFLINE = "user not in network"


def other_party(caller_id: int, receiver_id: int, sender_id: Optional[int]) -> int:
    """The participant of a call that did not send the frame."""
    return receiver_id if sender_id == caller_id else caller_id


class CallSignaling:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        directory: PresenceDirectory,
        delivery: Delivery,
        clock: Callable[[], datetime],
    ):
        self._session_factory = session_factory
        self._directory = directory
        self._delivery = delivery
        self._clock = clock

    async def offer(self, state: ConnectionState, frame: CallOfferFrame) -> None:
        """
        Record a pending call and relay the offer to the receiver.

        An offline receiver gets nothing; the caller is told with call_error
        and must fall back on its own (e.g. push notification).
        """
        caller_id = state.user_id
        logger.info(
            f"CALL_OFFER: callId={frame.call_id}, chatId={frame.chat_id}, "
            f"callerId={caller_id}, receiverId={frame.receiver_id}, type={frame.call_type.value}"
        )

        try:
            with self._session_factory() as db:
                caller = get_user(db, caller_id)
                if caller is None:
                    logger.error(f"CALL_OFFER: caller {caller_id} not found")
                    await self._delivery.send(state.connection_id, ErrorEvent(message="user not found"))
                    return
                caller_name = caller.username or caller.email or "Unknown"
                caller_avatar = caller.avatar_url
        except SQLAlchemyError as e:
            logger.error(f"CALL_OFFER: caller lookup failed: {e}")
            return

        self._record_offer(frame, caller_id)

        receiver_connection = self._directory.connection_for(frame.receiver_id)
        if receiver_connection is None:
            logger.info(f"CALL_OFFER: receiver {frame.receiver_id} is offline")
            await self._delivery.send(
                state.connection_id,
                CallErrorEvent(call_id=frame.call_id, error=RECEIVER_OFFLINE),
            )
            return

        relayed = await self._delivery.send(
            receiver_connection,
            CallOfferEvent(
                call_id=frame.call_id,
                chat_id=frame.chat_id,
                caller_id=str(caller_id),
                caller_name=caller_name,
                caller_avatar=caller_avatar,
                call_type=frame.call_type,
                offer=frame.offer,
            ),
        )
        if not relayed:
            await self._delivery.send(
                state.connection_id,
                CallErrorEvent(call_id=frame.call_id, error=RECEIVER_OFFLINE),
            )
            return

        await self._delivery.send(state.connection_id, CallOfferSentEvent(call_id=frame.call_id))

    def _record_offer(self, frame: CallOfferFrame, caller_id: int) -> None:
        # Signaling proceeds even when the row cannot be written
        try:
            with self._session_factory() as db:
                chat = get_chat_by_uuid(db, frame.chat_id)
                if chat is None:
                    logger.warning(f"CALL_OFFER: chat not found, call {frame.call_id} not recorded")
                    return
                if create_call(
                    db,
                    call_uuid=frame.call_id,
                    chat_id=chat.id,
                    caller_id=caller_id,
                    receiver_id=frame.receiver_id,
                    call_type=frame.call_type.value,
                    now=self._clock(),
                ):
                    record_call_transition(CallStatus.PENDING.value)
        except SQLAlchemyError as e:
            logger.error(f"CALL_OFFER: failed to record call {frame.call_id}: {e}")

    async def answer(self, state: ConnectionState, frame: CallAnswerFrame) -> None:
        """
        Mark the call active and relay the answer to the other party.

        If the call store is unavailable the answer is broadcast to every
        other authorized connection so the caller still receives it.
        """
        event = CallAnswerEvent(call_id=frame.call_id, answer=frame.answer)

        try:
            with self._session_factory() as db:
                call = get_call(db, frame.call_id)
                if call is None:
                    logger.warning(f"CALL_ANSWER: call not found: {frame.call_id}")
                    return
                status = call.status
                target_id = other_party(call.caller_id, call.receiver_id, state.user_id)
                if status == CallStatus.PENDING.value:
                    update_call(db, frame.call_id, status=CallStatus.ACTIVE.value, connected_at=self._clock())
                    record_call_transition(CallStatus.ACTIVE.value)
        except SQLAlchemyError as e:
            logger.error(f"CALL_ANSWER: call store unavailable, broadcasting answer for {frame.call_id}: {e}")
            await self._delivery.broadcast_authorized(event, exclude=state.connection_id)
            return

        if status in TERMINAL_CALL_STATUSES:
            logger.warning(f"CALL_ANSWER: call {frame.call_id} already {status}, answer dropped")
            return

        if await self._delivery.send_to_user(target_id, event):
            logger.info(f"CALL_ANSWER: relayed to user {target_id}")
        else:
            logger.info(f"CALL_ANSWER: user {target_id} is offline")

    async def ice_candidate(self, state: ConnectionState, frame: CallIceCandidateFrame) -> None:
        try:
            with self._session_factory() as db:
                call = get_call(db, frame.call_id)
                if call is None:
                    logger.warning(f"ICE_CANDIDATE: call not found: {frame.call_id}")
                    return
                target_id = other_party(call.caller_id, call.receiver_id, state.user_id)
        except SQLAlchemyError as e:
            logger.error(f"ICE_CANDIDATE: call lookup failed: {e}")
            return

        event = CallIceCandidateEvent(call_id=frame.call_id, candidate=frame.candidate)
        if await self._delivery.send_to_user(target_id, event):
            logger.debug(f"ICE_CANDIDATE: relayed to user {target_id}")

    async def end(self, state: ConnectionState, frame: CallEndFrame) -> None:
        """
        End a call and notify the other party.

        Accepted from unauthenticated connections; with no known sender both
        caller and receiver are notified.
        """
        sender_id = state.user_id if state.authorized else None
        now = self._clock()
        logger.info(f"CALL_END: callId={frame.call_id}, reason={frame.reason}, from={sender_id or 'unknown'}")

        try:
            with self._session_factory() as db:
                call = get_call(db, frame.call_id)
                if call is None:
                    logger.warning(f"CALL_END: call not found: {frame.call_id}")
                    return
                caller_id, receiver_id = call.caller_id, call.receiver_id
                if call.status in TERMINAL_CALL_STATUSES:
                    logger.info(f"CALL_END: call {frame.call_id} already {call.status}")
                    duration = call.duration
                else:
                    duration = None
                    if call.connected_at is not None:
                        duration = int((now - call.connected_at).total_seconds())
                    update_call(
                        db,
                        frame.call_id,
                        status=CallStatus.ENDED.value,
                        ended_at=now,
                        duration=duration,
                        end_reason=frame.reason,
                    )
                    record_call_transition(CallStatus.ENDED.value)
                    logger.info(f"CALL_END: call {frame.call_id} ended, duration: {duration}")
        except SQLAlchemyError as e:
            logger.error(f"CALL_END: failed to end call {frame.call_id}: {e}")
            return

        event = CallEndedEvent(call_id=frame.call_id, reason=frame.reason, duration=duration)
        if sender_id is not None:
            await self._delivery.send_to_user(other_party(caller_id, receiver_id, sender_id), event)
        else:
            await self._delivery.send_to_users([caller_id, receiver_id], event)

    async def decline(self, state: ConnectionState, frame: CallDeclineFrame) -> None:
        try:
            with self._session_factory() as db:
                call = get_call(db, frame.call_id)
                if call is None:
                    logger.warning(f"CALL_DECLINE: call not found: {frame.call_id}")
                    return
                caller_id = call.caller_id
                if call.status in TERMINAL_CALL_STATUSES:
                    logger.info(f"CALL_DECLINE: call {frame.call_id} already {call.status}")
                else:
                    update_call(db, frame.call_id, status=CallStatus.DECLINED.value, ended_at=self._clock())
                    record_call_transition(CallStatus.DECLINED.value)
        except SQLAlchemyError as e:
            logger.error(f"CALL_DECLINE: failed to decline call {frame.call_id}: {e}")
            return

        await self._delivery.send_to_user(caller_id, CallDeclinedEvent(call_id=frame.call_id))
