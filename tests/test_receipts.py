"""
Tests for mark_read and message_read notifications.

Tests cover:
- Read cursor advanced to the current time
- One message_read per sender, carrying that sender's newest message
- Offline senders, deleted messages and unknown chats
"""

import asyncio
from datetime import timedelta

from wavehub.models import Message
from wavehub.storage import create_message

from helpers import ALICE, BOB, CAROL, get_read_cursor, login, send


def add_messages(session_factory, clock, chat_id, sender_id, count, **overrides):
    """Store count messages one second apart and return their ids."""
    ids = []
    with session_factory() as db:
        for n in range(count):
            message = create_message(
                db,
                chat_id=chat_id,
                sender_id=sender_id,
                content=f"message {n}",
                message_type="text",
                now=clock.now - timedelta(minutes=10) + timedelta(seconds=n),
            )
            for name, value in overrides.items():
                setattr(message, name, value)
            db.commit()
            ids.append(message.id)
    return ids


class TestMarkRead:

    def test_one_notification_with_newest_message(self, hub, session_factory, clock):
        ids = add_messages(session_factory, clock, chat_id=1, sender_id=BOB, count=3)

        async def scenario():
            bob = await login(hub, BOB)
            alice = await login(hub, ALICE)
            bob.sent.clear()
            await send(hub, alice, {"type": "mark_read", "chatId": "chat1"})
            return alice, bob

        alice, bob = asyncio.run(scenario())

        assert bob.sent == [{
            "type": "message_read",
            "chatId": "chat1",
            "messageId": str(ids[-1]),
            "readBy": ALICE,
            "status": "read",
        }]
        assert alice.sent == []
        with session_factory() as db:
            assert get_read_cursor(db, 1, ALICE) == clock.now

    def test_own_messages_are_not_reported(self, hub, session_factory, clock):
        add_messages(session_factory, clock, chat_id=1, sender_id=ALICE, count=2)

        async def scenario():
            alice = await login(hub, ALICE)
            await send(hub, alice, {"type": "mark_read", "chatId": "chat1"})
            return alice

        alice = asyncio.run(scenario())
        assert alice.sent == []

    def test_offline_sender_still_advances_cursor(self, hub, session_factory, clock):
        add_messages(session_factory, clock, chat_id=1, sender_id=BOB, count=2)

        async def scenario():
            alice = await login(hub, ALICE)
            await send(hub, alice, {"type": "mark_read", "chatId": "chat1"})
            return alice

        alice = asyncio.run(scenario())

        assert alice.sent == []
        with session_factory() as db:
            assert get_read_cursor(db, 1, ALICE) == clock.now

    def test_deleted_messages_are_skipped(self, hub, session_factory, clock):
        kept = add_messages(session_factory, clock, chat_id=1, sender_id=BOB, count=1)
        clock.advance(1)
        add_messages(session_factory, clock, chat_id=1, sender_id=BOB, count=1, is_deleted=True)

        async def scenario():
            bob = await login(hub, BOB)
            alice = await login(hub, ALICE)
            bob.sent.clear()
            await send(hub, alice, {"type": "mark_read", "chatId": "chat1"})
            return bob

        bob = asyncio.run(scenario())

        assert [event["messageId"] for event in bob.of_type("message_read")] == [str(kept[0])]
        with session_factory() as db:
            assert db.query(Message).count() == 2

    def test_messages_of_other_chats_are_ignored(self, hub, session_factory, clock):
        add_messages(session_factory, clock, chat_id=2, sender_id=CAROL, count=1)

        async def scenario():
            carol = await login(hub, CAROL)
            alice = await login(hub, ALICE)
            carol.sent.clear()
            await send(hub, alice, {"type": "mark_read", "chatId": "chat1"})
            return carol

        carol = asyncio.run(scenario())
        assert carol.sent == []

    def test_unknown_chat(self, hub, session_factory):
        async def scenario():
            alice = await login(hub, ALICE)
            await send(hub, alice, {"type": "mark_read", "chatId": "no-such-chat"})
            return alice

        alice = asyncio.run(scenario())

        assert alice.sent == []
        with session_factory() as db:
            assert get_read_cursor(db, 1, ALICE) is None

    def test_mark_read_without_chat_is_dropped(self, hub):
        async def scenario():
            alice = await login(hub, ALICE)
            await send(hub, alice, {"type": "mark_read"})
            return alice

        assert asyncio.run(scenario()).sent == []
