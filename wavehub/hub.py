"""
Signaling hub: connection lifecycle, authentication and frame dispatch.

One hub instance owns the Connection Registry and the User Presence
Directory. The transport calls connect() when a socket opens, dispatch() for
every text frame in arrival order, and disconnect() when the socket closes.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wavehub.auth import TokenVerifier
from wavehub.calls import CallSignaling
from wavehub.membership import ChatMembershipResolver
from wavehub.messaging import MessageRelay
from wavehub.metrics import record_frame
from wavehub.presence import ConnectionRegistry, ConnectionState, Delivery, PresenceDirectory, Transport
from wavehub.receipts import ReadReceiptTracker
from wavehub.schemas import (
    CALL_FRAME_TYPES,
    PRE_AUTH_TYPES,
    AuthErrorEvent,
    AuthFrame,
    AuthSuccessEvent,
    CallErrorEvent,
    ErrorEvent,
    Frame,
    InboundType,
    MalformedFrameError,
    PongEvent,
    UnknownFrameTypeError,
    UserPresenceEvent,
    parse_envelope,
    validate_frame,
)
from wavehub.storage import set_user_online, utcnow

logger = logging.getLogger(__name__)

# Close code sent to a socket replaced by a newer login of the same user
EVICTED_CLOSE_CODE = 4000

Handler = Callable[[ConnectionState, Frame], Awaitable[None]]


class SignalingHub:
    """
    Routes inbound frames to the message relay, read-receipt tracker and call
    signaling, and keeps presence consistent.

    Registry and directory mutations are serialized by a single asyncio lock.
    Storage is never called while the lock is held.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        verifier: TokenVerifier,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._verifier = verifier
        self._clock = clock
        self._lock = asyncio.Lock()

        self.registry = ConnectionRegistry()
        self.directory = PresenceDirectory()
        self.delivery = Delivery(self.registry, self.directory)
        self.membership = ChatMembershipResolver(session_factory)
        self.messages = MessageRelay(
            session_factory, self.registry, self.directory, self.delivery, self.membership, clock
        )
        self.receipts = ReadReceiptTracker(session_factory, self.delivery, clock)
        self.calls = CallSignaling(session_factory, self.directory, self.delivery, clock)

        self._handlers: Dict[InboundType, Handler] = {
            InboundType.AUTH: self._handle_auth,
            InboundType.PING: self._handle_ping,
            InboundType.TYPING: lambda state, frame: self.messages.typing(state, frame, True),
            InboundType.STOPPED_TYPING: lambda state, frame: self.messages.typing(state, frame, False),
            InboundType.SEND_MESSAGE: self.messages.send_message,
            InboundType.MESSAGE: self.messages.send_message,
            InboundType.JOIN_CHAT: self._handle_join_chat,
            InboundType.LEAVE_CHAT: self._handle_leave_chat,
            InboundType.MARK_READ: self.receipts.mark_read,
            InboundType.CALL_OFFER: self.calls.offer,
            InboundType.CALL_ANSWER: self.calls.answer,
            InboundType.CALL_ICE_CANDIDATE: self.calls.ice_candidate,
            InboundType.CALL_END: self.calls.end,
            InboundType.CALL_DECLINE: self.calls.decline,
        }

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def connect(self, transport: Transport) -> ConnectionState:
        """Register a new, unauthenticated connection."""
        state = self.registry.register(transport)
        logger.info(f"Connection opened, total connections: {len(self.registry)}")
        return state

    def is_authorized(self, connection_id: str) -> bool:
        state = self.registry.get(connection_id)
        return state is not None and state.authorized

    async def disconnect(self, connection_id: str) -> None:
        """
        Remove a closed connection. If it still owned its user's presence
        entry the user goes offline and related users are told.
        """
        async with self._lock:
            state = self.registry.unregister(connection_id)
            if state is None or not state.authorized:
                return
            user_id, username = state.user_id, state.username
            went_offline = self.directory.unbind(user_id, connection_id)

        logger.info(f"User disconnected: {username} (ID: {user_id})")
        if not went_offline:
            return

        self._set_online(user_id, False)
        await self._broadcast_presence(user_id, False)

    async def close_all(self) -> None:
        """Close every live connection, used on shutdown."""
        for state in self.registry:
            transport = self.registry.transport(state.connection_id)
            if transport is not None:
                await self._close_transport(transport, code=1001)
            await self.disconnect(state.connection_id)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch(self, connection_id: str, raw: str) -> None:
        """
        Handle one inbound text frame. Errors are answered on this connection
        only and never propagate to the transport loop.
        """
        state = self.registry.get(connection_id)
        if state is None:
            logger.debug(f"Frame for unknown connection {connection_id} dropped")
            return

        try:
            kind, data = parse_envelope(raw)
        except MalformedFrameError as e:
            logger.warning(f"Malformed frame: {e}")
            record_frame("invalid", "invalid")
            await self.delivery.send(connection_id, ErrorEvent(message="invalid message format"))
            return
        except UnknownFrameTypeError as e:
            logger.warning(f"Unknown message type: {e.frame_type}")
            record_frame("unknown", "unknown_type")
            await self.delivery.send(connection_id, ErrorEvent(message="unknown message type"))
            return

        logger.debug(f"Frame received: {kind.value}")

        if not state.authorized and kind not in PRE_AUTH_TYPES and kind is not InboundType.CALL_END:
            logger.warning(f"Unauthorized {kind.value} frame rejected")
            record_frame(kind.value, "unauthorized")
            if kind in CALL_FRAME_TYPES:
                reply = CallErrorEvent(error="unauthorized", message="authorization required to place calls")
            else:
                reply = ErrorEvent(message="authorization required, send an auth message with a token")
            await self.delivery.send(connection_id, reply)
            return

        try:
            frame = validate_frame(kind, data)
        except ValidationError as e:
            record_frame(kind.value, "invalid")
            await self._reject_invalid(state, kind, e)
            return

        try:
            await self._handlers[kind](state, frame)
            record_frame(kind.value, "ok")
        except Exception:
            logger.exception(f"Failed to process {kind.value} frame")
            record_frame(kind.value, "error")
            await self.delivery.send(connection_id, ErrorEvent(message="message processing failed"))

    async def _reject_invalid(self, state: ConnectionState, kind: InboundType, error: ValidationError) -> None:
        """
        Apply the missing-field policy of each frame type. Only auth and
        call_offer answer the client; everything else is logged and dropped.
        """
        if kind is InboundType.AUTH:
            logger.warning("Auth frame without token")
            await self.delivery.send(state.connection_id, AuthErrorEvent(error="token not provided"))
            return

        if kind is InboundType.CALL_OFFER:
            bad_receiver = any(
                err["loc"] and err["loc"][0] == "receiverId" and err["type"] != "missing"
                for err in error.errors()
            )
            message = "invalid receiver id" if bad_receiver else "insufficient data to start call"
            logger.warning(f"CALL_OFFER rejected: {message}")
            await self.delivery.send(state.connection_id, ErrorEvent(message=message))
            return

        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in error.errors())
        logger.warning(f"{kind.value} frame dropped, invalid or missing: {fields}")

    # =========================================================================
    # Handlers owned by the hub
    # =========================================================================

    async def _handle_ping(self, state: ConnectionState, frame: Frame) -> None:
        await self.delivery.send(state.connection_id, PongEvent())

    async def _handle_join_chat(self, state: ConnectionState, frame: Frame) -> None:
        self.messages.join_chat(state, frame)

    async def _handle_leave_chat(self, state: ConnectionState, frame: Frame) -> None:
        self.messages.leave_chat(state, frame)

    async def _handle_auth(self, state: ConnectionState, frame: AuthFrame) -> None:
        """
        Authenticate a connection. A previous connection of the same user is
        evicted (last auth wins) before the new one takes its place.
        """
        with self._session_factory() as db:
            user = self._verifier.authenticate(db, frame.token)

        if user is None:
            await self.delivery.send(state.connection_id, AuthErrorEvent(error="invalid token"))
            return

        replaced_user_id = None
        async with self._lock:
            if state.connection_id not in self.registry:
                # Socket closed while the token was being checked
                return
            if state.authorized and state.user_id != user.user_id:
                if self.directory.unbind(state.user_id, state.connection_id):
                    replaced_user_id = state.user_id

            previous = self.directory.bind(user.user_id, state.connection_id)
            if previous is not None and previous != state.connection_id:
                await self._evict(previous, user.username)

            state.authorize(user.user_id, user.username)

        logger.info(f"User authorized: {user.username} (ID: {user.user_id}), online users: {len(self.directory)}")

        if replaced_user_id is not None:
            logger.info(f"Connection switched from user {replaced_user_id}, marking them offline")
            self._set_online(replaced_user_id, False)
            await self._broadcast_presence(replaced_user_id, False)

        self._set_online(user.user_id, True)
        await self.delivery.send(
            state.connection_id,
            AuthSuccessEvent(user_id=user.user_id, username=user.username),
        )
        await self._broadcast_presence(user.user_id, True)

    async def _evict(self, connection_id: str, username: str) -> None:
        # Caller holds the lock. The evicted socket's own disconnect() later
        # finds nothing registered and broadcasts nothing.
        old_state = self.registry.get(connection_id)
        if old_state is not None:
            old_state.revoke()
        transport = self.registry.transport(connection_id)
        self.registry.unregister(connection_id)
        logger.info(f"User {username} connected again, closing previous connection {connection_id}")
        if transport is not None:
            await self._close_transport(transport, code=EVICTED_CLOSE_CODE)

    @staticmethod
    async def _close_transport(transport: Transport, code: int) -> None:
        try:
            await transport.close(code=code)
        except (RuntimeError, ConnectionError) as e:
            logger.debug(f"Close on an already closed socket: {e}")

    # =========================================================================
    # Presence
    # =========================================================================

    def _set_online(self, user_id: int, online: bool) -> None:
        try:
            with self._session_factory() as db:
                set_user_online(db, user_id, online, self._clock())
        except SQLAlchemyError as e:
            logger.error(f"Failed to mark user {user_id} {'online' if online else 'offline'}: {e}")

    async def _broadcast_presence(self, user_id: int, online: bool) -> None:
        """Tell every live co-participant of user_id about a presence change."""
        try:
            related = self.membership.related_users(user_id)
        except SQLAlchemyError as e:
            logger.error(f"Presence broadcast skipped, related users of {user_id} unavailable: {e}")
            return
        delivered = await self.delivery.send_to_users(related, UserPresenceEvent.for_user(user_id, online))
        logger.debug(f"{'user_online' if online else 'user_offline'} for {user_id} sent to {delivered} user(s)")
