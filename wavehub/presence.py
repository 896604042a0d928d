"""
Connection Registry and User Presence Directory.

The registry maps an opaque connection id to the socket and its explicit
authorization state. The directory maps a user id to the single connection
id currently owning that user. Neither holds state outside a hub instance.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, Union

from starlette.websockets import WebSocketDisconnect

from wavehub.schemas import Event

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """The subset of a WebSocket the hub needs."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass
class ConnectionState:
    """Authorization state of one connection."""
    connection_id: str
    authorized: bool = False
    user_id: Optional[int] = None
    username: Optional[str] = None
    current_chat_id: Optional[str] = None

    def authorize(self, user_id: int, username: str) -> None:
        self.authorized = True
        self.user_id = user_id
        self.username = username
        self.current_chat_id = None

    def revoke(self) -> None:
        self.authorized = False
        self.user_id = None
        self.username = None
        self.current_chat_id = None


class ConnectionRegistry:
    """Live connections keyed by connection id."""

    def __init__(self) -> None:
        self._states: Dict[str, ConnectionState] = {}
        self._transports: Dict[str, Transport] = {}

    def register(self, transport: Transport) -> ConnectionState:
        connection_id = uuid.uuid4().hex
        state = ConnectionState(connection_id=connection_id)
        self._states[connection_id] = state
        self._transports[connection_id] = transport
        return state

    def unregister(self, connection_id: str) -> Optional[ConnectionState]:
        self._transports.pop(connection_id, None)
        return self._states.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[ConnectionState]:
        return self._states.get(connection_id)

    def transport(self, connection_id: str) -> Optional[Transport]:
        return self._transports.get(connection_id)

    def authorized(self) -> List[ConnectionState]:
        return [state for state in self._states.values() if state.authorized]

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[ConnectionState]:
        return iter(list(self._states.values()))


class PresenceDirectory:
    """
    userId -> connection id, at most one entry per user.

    Callers serialize bind/unbind through the hub lock.
    """

    def __init__(self) -> None:
        self._by_user: Dict[int, str] = {}

    def bind(self, user_id: int, connection_id: str) -> Optional[str]:
        """
        Make connection_id the live connection of user_id.

        Returns:
            The connection id previously bound to the user, if any.
        """
        previous = self._by_user.get(user_id)
        self._by_user[user_id] = connection_id
        return previous

    def unbind(self, user_id: int, connection_id: str) -> bool:
        """
        Remove the entry only if connection_id still owns it.

        Returns:
            True if an entry was removed.
        """
        if self._by_user.get(user_id) != connection_id:
            return False
        del self._by_user[user_id]
        return True

    def connection_for(self, user_id: Optional[int]) -> Optional[str]:
        if user_id is None:
            return None
        return self._by_user.get(user_id)

    def __len__(self) -> int:
        return len(self._by_user)


class Delivery:
    """Sends events to connections located through the registry and directory."""

    def __init__(self, registry: ConnectionRegistry, directory: PresenceDirectory) -> None:
        self._registry = registry
        self._directory = directory

    async def send(self, connection_id: str, event: Union[Event, dict]) -> bool:
        """
        Send one event to a connection.

        Returns:
            True if the frame was handed to the socket, False if the
            connection is gone or the send failed.
        """
        transport = self._registry.transport(connection_id)
        if transport is None:
            return False
        data = event.to_wire() if isinstance(event, Event) else event
        try:
            await transport.send_json(data)
            return True
        except (WebSocketDisconnect, RuntimeError, ConnectionError) as e:
            logger.debug(f"Failed to send {data.get('type')} to {connection_id}: {e}")
            return False

    async def send_to_user(self, user_id: Optional[int], event: Union[Event, dict]) -> bool:
        """Send to the user's live connection. False if the user is offline."""
        connection_id = self._directory.connection_for(user_id)
        if connection_id is None:
            return False
        return await self.send(connection_id, event)

    async def send_to_users(self, user_ids: Iterable[int], event: Union[Event, dict]) -> int:
        """
        Send to every listed user that is online.

        Returns:
            Number of users the event was delivered to.
        """
        delivered = 0
        for user_id in user_ids:
            if await self.send_to_user(user_id, event):
                delivered += 1
        return delivered

    async def broadcast_authorized(self, event: Union[Event, dict], exclude: Optional[str] = None) -> int:
        """Send to every authorized connection except `exclude`."""
        delivered = 0
        for state in self._registry.authorized():
            if state.connection_id == exclude:
                continue
            if await self.send(state.connection_id, event):
                delivered += 1
        return delivered
