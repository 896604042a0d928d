"""
Tests for call signaling.

Tests cover:
- call_offer relay, call_offer_sent and the offline receiver error
- call_offer validation replies
- pending -> active -> ended / pending -> declined transitions
- Duration computed from connected_at
- call_end from an unauthenticated connection
- Answer broadcast when the call store is unavailable
- Calls already ended or declined are not mutated
"""

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

import wavehub.calls
from wavehub.calls import other_party
from wavehub.models import Call

from helpers import ALICE, BOB, CAROL, login, open_connection, send

OFFER_SDP = {"type": "offer", "sdp": "v=0\r\no=- 46117317 2 IN IP4 127.0.0.1\r\n"}
ANSWER_SDP = {"type": "answer", "sdp": "v=0\r\no=- 46117318 2 IN IP4 127.0.0.1\r\n"}


def offer_frame(call_id="call-1", receiver_id=BOB, **extra):
    frame = {
        "type": "call_offer",
        "callId": call_id,
        "chatId": "chat1",
        "receiverId": receiver_id,
        "offer": OFFER_SDP,
        "callType": "video",
    }
    frame.update(extra)
    return frame


def get_call_row(session_factory, call_id="call-1"):
    with session_factory() as db:
        call = db.query(Call).filter(Call.call_uuid == call_id).first()
        if call is not None:
            db.expunge(call)
        return call


async def start_call(hub, call_id="call-1"):
    """alice calls bob and both sides forget the offer handshake."""
    bob = await login(hub, BOB)
    alice = await login(hub, ALICE)
    await send(hub, alice, offer_frame(call_id))
    alice.sent.clear()
    bob.sent.clear()
    return alice, bob


def test_other_party():
    assert other_party(ALICE, BOB, ALICE) == BOB
    assert other_party(ALICE, BOB, BOB) == ALICE
    assert other_party(ALICE, BOB, None) == ALICE


class TestOffer:

    def test_offer_relayed_to_online_receiver(self, hub, session_factory, clock):
        async def scenario():
            bob = await login(hub, BOB)
            alice = await login(hub, ALICE)
            bob.sent.clear()
            await send(hub, alice, offer_frame())
            return alice, bob

        alice, bob = asyncio.run(scenario())

        assert bob.sent == [{
            "type": "call_offer",
            "callId": "call-1",
            "chatId": "chat1",
            "callerId": str(ALICE),
            "callerName": "alice",
            "callerAvatar": "https://cdn.example.com/alice.png",
            "callType": "video",
            "offer": OFFER_SDP,
        }]
        assert alice.sent == [{"type": "call_offer_sent", "callId": "call-1", "status": "sent"}]

        call = get_call_row(session_factory)
        assert call.status == "pending"
        assert call.caller_id == ALICE and call.receiver_id == BOB
        assert call.call_type == "video"
        assert call.started_at == clock.now

    def test_offline_receiver(self, hub, session_factory):
        async def scenario():
            open_connection(hub)
            alice = await login(hub, ALICE)
            await send(hub, alice, offer_frame())
            return alice

        alice = asyncio.run(scenario())

        assert alice.sent == [{"type": "call_error", "callId": "call-1", "error": "user not in network"}]
        assert get_call_row(session_factory).status == "pending"

    def test_call_type_defaults_to_audio(self, hub, session_factory):
        async def scenario():
            bob = await login(hub, BOB)
            alice = await login(hub, ALICE)
            frame = offer_frame()
            del frame["callType"]
            await send(hub, alice, frame)
            return bob

        bob = asyncio.run(scenario())

        assert bob.of_type("call_offer")[0]["callType"] == "audio"
        assert get_call_row(session_factory).call_type == "audio"

    def test_null_call_type_defaults_to_audio(self, hub, session_factory):
        async def scenario():
            bob = await login(hub, BOB)
            alice = await login(hub, ALICE)
            await send(hub, alice, offer_frame(callType=None))
            return alice, bob

        alice, bob = asyncio.run(scenario())

        assert alice.types() == ["call_offer_sent"]
        assert bob.of_type("call_offer")[0]["callType"] == "audio"
        assert get_call_row(session_factory).call_type == "audio"

    def test_numeric_string_receiver_id(self, hub):
        async def scenario():
            bob = await login(hub, BOB)
            alice = await login(hub, ALICE)
            await send(hub, alice, offer_frame(receiver_id=str(BOB)))
            return alice, bob

        alice, bob = asyncio.run(scenario())
        assert alice.types() == ["call_offer_sent"]
        assert len(bob.of_type("call_offer")) == 1

    @pytest.mark.parametrize("field", ["callId", "chatId", "receiverId", "offer"])
    def test_missing_field(self, hub, field):
        async def scenario():
            alice = await login(hub, ALICE)
            frame = offer_frame()
            del frame[field]
            await send(hub, alice, frame)
            return alice

        alice = asyncio.run(scenario())
        assert alice.sent == [{"type": "error", "message": "insufficient data to start call"}]

    @pytest.mark.parametrize("receiver_id", ["abc", 0, -3])
    def test_invalid_receiver_id(self, hub, session_factory, receiver_id):
        async def scenario():
            alice = await login(hub, ALICE)
            await send(hub, alice, offer_frame(receiver_id=receiver_id))
            return alice

        alice = asyncio.run(scenario())

        assert alice.sent == [{"type": "error", "message": "invalid receiver id"}]
        assert get_call_row(session_factory) is None

    def test_duplicate_call_id_still_relayed(self, hub, session_factory):
        async def scenario():
            bob = await login(hub, BOB)
            alice = await login(hub, ALICE)
            await send(hub, alice, offer_frame())
            await send(hub, alice, offer_frame())
            return alice, bob

        alice, bob = asyncio.run(scenario())

        assert len(bob.of_type("call_offer")) == 2
        assert alice.types() == ["call_offer_sent", "call_offer_sent"]
        with session_factory() as db:
            assert db.query(Call).count() == 1

    def test_unknown_chat_is_relayed_but_not_recorded(self, hub, session_factory):
        async def scenario():
            bob = await login(hub, BOB)
            alice = await login(hub, ALICE)
            await send(hub, alice, offer_frame(chatId="no-such-chat"))
            return bob

        bob = asyncio.run(scenario())

        assert len(bob.of_type("call_offer")) == 1
        assert get_call_row(session_factory) is None


class TestAnswer:

    def test_answer_activates_call(self, hub, session_factory, clock):
        async def scenario():
            alice, bob = await start_call(hub)
            clock.advance(3)
            await send(hub, bob, {"type": "call_answer", "callId": "call-1", "answer": ANSWER_SDP})
            return alice, bob

        alice, bob = asyncio.run(scenario())

        assert alice.sent == [{"type": "call_answer", "callId": "call-1", "answer": ANSWER_SDP}]
        assert bob.sent == []
        call = get_call_row(session_factory)
        assert call.status == "active"
        assert call.connected_at == clock.now

    def test_answer_for_unknown_call(self, hub):
        async def scenario():
            alice, bob = await start_call(hub)
            await send(hub, bob, {"type": "call_answer", "callId": "other", "answer": ANSWER_SDP})
            return alice, bob

        alice, bob = asyncio.run(scenario())
        assert alice.sent == [] and bob.sent == []

    def test_answer_without_payload_is_dropped(self, hub, session_factory):
        async def scenario():
            alice, bob = await start_call(hub)
            await send(hub, bob, {"type": "call_answer", "callId": "call-1"})
            return alice, bob

        alice, bob = asyncio.run(scenario())

        assert alice.sent == [] and bob.sent == []
        assert get_call_row(session_factory).status == "pending"

    def test_answer_broadcast_when_store_unavailable(self, hub, monkeypatch):
        def unavailable(*args, **kwargs):
            raise OperationalError("SELECT calls", {}, Exception("database is locked"))

        async def scenario():
            alice, bob = await start_call(hub)
            carol = await login(hub, CAROL)
            anonymous = open_connection(hub)
            alice.sent.clear()
            monkeypatch.setattr(wavehub.calls, "get_call", unavailable)
            await send(hub, bob, {"type": "call_answer", "callId": "call-1", "answer": ANSWER_SDP})
            return alice, bob, carol, anonymous

        alice, bob, carol, anonymous = asyncio.run(scenario())

        expected = [{"type": "call_answer", "callId": "call-1", "answer": ANSWER_SDP}]
        assert alice.sent == expected
        assert carol.sent == expected
        assert bob.sent == []
        assert anonymous.sent == []


class TestIceCandidate:

    def test_candidates_relayed_both_ways(self, hub):
        caller_candidate = {"candidate": "candidate:1 1 udp 2122260223 10.0.0.1 54321 typ host", "sdpMid": "0"}
        receiver_candidate = {"candidate": "candidate:2 1 udp 2122260223 10.0.0.2 54322 typ host", "sdpMid": "0"}

        async def scenario():
            alice, bob = await start_call(hub)
            await send(hub, alice, {"type": "call_ice_candidate", "callId": "call-1", "candidate": caller_candidate})
            await send(hub, bob, {"type": "call_ice_candidate", "callId": "call-1", "candidate": receiver_candidate})
            return alice, bob

        alice, bob = asyncio.run(scenario())

        assert bob.sent == [{"type": "call_ice_candidate", "callId": "call-1", "candidate": caller_candidate}]
        assert alice.sent == [{"type": "call_ice_candidate", "callId": "call-1", "candidate": receiver_candidate}]

    def test_candidate_for_unknown_call(self, hub):
        async def scenario():
            alice, bob = await start_call(hub)
            await send(hub, alice, {"type": "call_ice_candidate", "callId": "nope", "candidate": "a=candidate"})
            return alice, bob

        alice, bob = asyncio.run(scenario())
        assert alice.sent == [] and bob.sent == []


class TestEnd:

    def test_end_after_answer_reports_duration(self, hub, session_factory, clock):
        async def scenario():
            alice, bob = await start_call(hub)
            await send(hub, bob, {"type": "call_answer", "callId": "call-1", "answer": ANSWER_SDP})
            clock.advance(42.7)
            await send(hub, alice, {"type": "call_end", "callId": "call-1", "reason": "hangup"})
            return alice, bob

        alice, bob = asyncio.run(scenario())

        assert bob.sent == [{"type": "call_ended", "callId": "call-1", "reason": "hangup", "duration": 42}]
        call = get_call_row(session_factory)
        assert call.status == "ended"
        assert call.duration == 42
        assert call.end_reason == "hangup"
        assert call.ended_at == clock.now

    def test_end_before_answer_has_no_duration(self, hub, session_factory):
        async def scenario():
            alice, bob = await start_call(hub)
            await send(hub, alice, {"type": "call_end", "callId": "call-1"})
            return alice, bob

        alice, bob = asyncio.run(scenario())

        assert bob.sent == [{"type": "call_ended", "callId": "call-1", "reason": "user_ended", "duration": None}]
        assert alice.sent == []
        call = get_call_row(session_factory)
        assert call.status == "ended"
        assert call.duration is None

    def test_null_reason_ends_call_as_user_ended(self, hub, session_factory):
        async def scenario():
            alice, bob = await start_call(hub)
            await send(hub, alice, {"type": "call_end", "callId": "call-1", "reason": None})
            return bob

        bob = asyncio.run(scenario())

        assert bob.sent == [{"type": "call_ended", "callId": "call-1", "reason": "user_ended", "duration": None}]
        call = get_call_row(session_factory)
        assert call.status == "ended"
        assert call.end_reason == "user_ended"

    def test_unauthenticated_end_notifies_both_parties(self, hub, session_factory):
        async def scenario():
            alice, bob = await start_call(hub)
            anonymous = open_connection(hub)
            await send(hub, anonymous, {"type": "call_end", "callId": "call-1"})
            return alice, bob, anonymous

        alice, bob, anonymous = asyncio.run(scenario())

        expected = [{"type": "call_ended", "callId": "call-1", "reason": "user_ended", "duration": None}]
        assert alice.sent == expected
        assert bob.sent == expected
        assert anonymous.sent == []
        assert get_call_row(session_factory).status == "ended"

    def test_end_of_ended_call_keeps_first_result(self, hub, session_factory, clock):
        async def scenario():
            alice, bob = await start_call(hub)
            await send(hub, bob, {"type": "call_answer", "callId": "call-1", "answer": ANSWER_SDP})
            clock.advance(10)
            await send(hub, alice, {"type": "call_end", "callId": "call-1", "reason": "hangup"})
            clock.advance(10)
            await send(hub, bob, {"type": "call_end", "callId": "call-1", "reason": "late"})
            return alice, bob

        alice, bob = asyncio.run(scenario())

        assert alice.of_type("call_ended") == [
            {"type": "call_ended", "callId": "call-1", "reason": "late", "duration": 10}
        ]
        call = get_call_row(session_factory)
        assert call.duration == 10
        assert call.end_reason == "hangup"


class TestDecline:

    def test_decline_notifies_caller(self, hub, session_factory, clock):
        async def scenario():
            alice, bob = await start_call(hub)
            await send(hub, bob, {"type": "call_decline", "callId": "call-1"})
            return alice, bob

        alice, bob = asyncio.run(scenario())

        assert alice.sent == [{"type": "call_declined", "callId": "call-1"}]
        assert bob.sent == []
        call = get_call_row(session_factory)
        assert call.status == "declined"
        assert call.ended_at == clock.now

    def test_answer_after_decline_is_dropped(self, hub, session_factory):
        async def scenario():
            alice, bob = await start_call(hub)
            await send(hub, bob, {"type": "call_decline", "callId": "call-1"})
            alice.sent.clear()
            await send(hub, bob, {"type": "call_answer", "callId": "call-1", "answer": ANSWER_SDP})
            return alice

        alice = asyncio.run(scenario())

        assert alice.sent == []
        call = get_call_row(session_factory)
        assert call.status == "declined"
        assert call.connected_at is None

    def test_end_after_decline_does_not_change_status(self, hub, session_factory):
        async def scenario():
            alice, bob = await start_call(hub)
            await send(hub, bob, {"type": "call_decline", "callId": "call-1"})
            await send(hub, alice, {"type": "call_end", "callId": "call-1", "reason": "cancelled"})
            return bob

        bob = asyncio.run(scenario())

        assert bob.of_type("call_ended") == [
            {"type": "call_ended", "callId": "call-1", "reason": "cancelled", "duration": None}
        ]
        assert get_call_row(session_factory).status == "declined"

    def test_decline_for_unknown_call(self, hub):
        async def scenario():
            alice, bob = await start_call(hub)
            await send(hub, bob, {"type": "call_decline", "callId": "nope"})
            return alice

        assert asyncio.run(scenario()).sent == []
