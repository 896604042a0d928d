"""
Test doubles and helpers for driving the hub without a network.
"""

import json
import os
from datetime import datetime, timedelta
from typing import Any, List, Optional

from wavehub.auth import create_access_token
from wavehub.models import Chat, ChatParticipant, User

TEST_JWT_SECRET = os.environ["JWT_SECRET"]

ALICE, BOB, CAROL, DAVE = 1, 2, 3, 4
USERNAMES = {ALICE: "alice", BOB: "bob", CAROL: "carol", DAVE: "dave"}


class FixedClock:
    """Injected clock; time only moves when a test advances it."""

    def __init__(self, start: datetime = datetime(2025, 1, 15, 10, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeConnection:
    """In-memory stand-in for a WebSocket."""

    def __init__(self):
        self.sent: List[dict] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.connection_id: Optional[str] = None

    async def send_json(self, data: Any) -> None:
        if self.closed:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code

    def of_type(self, event_type: str) -> List[dict]:
        return [event for event in self.sent if event.get("type") == event_type]

    def types(self) -> List[str]:
        return [event.get("type") for event in self.sent]


def seed_database(session_factory) -> None:
    """
    Users alice(1), bob(2), carol(3), dave(4).
    chat1: alice + bob, chat2: alice + carol. dave shares no chat.
    """
    with session_factory() as db:
        db.add_all([
            User(id=ALICE, username="alice", email="alice@example.com", avatar_url="https://cdn.example.com/alice.png"),
            User(id=BOB, username="bob", email="bob@example.com"),
            User(id=CAROL, username="carol", email="carol@example.com"),
            User(id=DAVE, username="dave", email="dave@example.com"),
        ])
        db.add_all([
            Chat(id=1, chat_uuid="chat1"),
            Chat(id=2, chat_uuid="chat2"),
        ])
        db.add_all([
            ChatParticipant(chat_id=1, user_id=ALICE),
            ChatParticipant(chat_id=1, user_id=BOB),
            ChatParticipant(chat_id=2, user_id=ALICE),
            ChatParticipant(chat_id=2, user_id=CAROL),
        ])
        db.commit()


def make_token(user_id: int, username: Optional[str] = None, **kwargs) -> str:
    return create_access_token(
        user_id,
        username or USERNAMES.get(user_id, f"user{user_id}"),
        kwargs.pop("secret", TEST_JWT_SECRET),
        **kwargs,
    )


def open_connection(hub) -> FakeConnection:
    conn = FakeConnection()
    conn.connection_id = hub.connect(conn).connection_id
    return conn


async def send(hub, conn: FakeConnection, frame: Any) -> None:
    raw = frame if isinstance(frame, str) else json.dumps(frame)
    await hub.dispatch(conn.connection_id, raw)


async def login(hub, user_id: int) -> FakeConnection:
    """Open a connection, authenticate it and forget the replies so far."""
    conn = open_connection(hub)
    await send(hub, conn, {"type": "auth", "token": make_token(user_id)})
    assert conn.of_type("auth_success"), conn.sent
    conn.sent.clear()
    return conn


def get_read_cursor(db, chat_id: int, user_id: int):
    """last_read_at of a participant, None if never read."""
    return (
        db.query(ChatParticipant.last_read_at)
        .filter(ChatParticipant.chat_id == chat_id, ChatParticipant.user_id == user_id)
        .scalar()
    )
