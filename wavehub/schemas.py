"""
Pydantic schemas for the WebSocket wire protocol.

This module contains:
- The closed set of inbound frame types and one model per type
- Outbound event models sent to clients
- Enumerations for message, call and call-type states

Field names on the wire are camelCase; models use snake_case with aliases.
"""

import json
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, Literal, Optional, Tuple, Type, Union

from pydantic import AfterValidator, BaseModel, Field, field_validator


# =============================================================================
# Enumerations
# =============================================================================

class InboundType(str, Enum):
    AUTH = "auth"
    PING = "ping"
    TYPING = "typing"
    STOPPED_TYPING = "stopped_typing"
    SEND_MESSAGE = "send_message"
    MESSAGE = "message"
    JOIN_CHAT = "join_chat"
    LEAVE_CHAT = "leave_chat"
    MARK_READ = "mark_read"
    CALL_OFFER = "call_offer"
    CALL_ANSWER = "call_answer"
    CALL_ICE_CANDIDATE = "call_ice_candidate"
    CALL_END = "call_end"
    CALL_DECLINE = "call_decline"


# Accepted before the connection is authorized
PRE_AUTH_TYPES = frozenset({InboundType.AUTH, InboundType.PING})

CALL_FRAME_TYPES = frozenset({
    InboundType.CALL_OFFER,
    InboundType.CALL_ANSWER,
    InboundType.CALL_ICE_CANDIDATE,
    InboundType.CALL_END,
    InboundType.CALL_DECLINE,
})


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class CallStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    ENDED = "ended"
    DECLINED = "declined"


TERMINAL_CALL_STATUSES = frozenset({CallStatus.ENDED.value, CallStatus.DECLINED.value})


class CallType(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


# =============================================================================
# Inbound Frames
# =============================================================================

class FrameError(Exception):
    """Raised when a raw frame cannot be routed."""


class MalformedFrameError(FrameError):
    """Frame is not a JSON object with a string 'type'."""


class UnknownFrameTypeError(FrameError):
    """Frame 'type' is outside the supported set."""

    def __init__(self, frame_type: str):
        super().__init__(f"unknown message type: {frame_type}")
        self.frame_type = frame_type


def _not_empty(value):
    if not value:
        raise ValueError("signaling payload must not be empty")
    return value


# SDP offers/answers and ICE candidates are relayed verbatim
SignalPayload = Annotated[Union[Dict[str, Any], str], AfterValidator(_not_empty)]


class Frame(BaseModel):
    """Base of every inbound frame."""
    type: InboundType

    model_config = {"populate_by_name": True, "extra": "ignore"}


class AuthFrame(Frame):
    token: str = Field(..., min_length=1, description="Bearer access token")


class PingFrame(Frame):
    pass


class ChatFrame(Frame):
    """typing, stopped_typing, join_chat and mark_read."""
    chat_id: str = Field(..., alias="chatId", min_length=1)


class LeaveChatFrame(Frame):
    chat_id: Optional[str] = Field(None, alias="chatId")


class SendMessageFrame(Frame):
    chat_id: str = Field(..., alias="chatId", min_length=1)
    content: str = Field(..., min_length=1)
    message_type: str = Field("text", alias="messageType")
    temp_id: Optional[Union[str, int]] = Field(
        None,
        alias="tempId",
        description="Client correlation id echoed back in message_sent"
    )

    @field_validator("message_type", mode="before")
    @classmethod
    def default_message_type(cls, v):
        """An explicit null falls back to a text message."""
        return "text" if v is None else v


class CallOfferFrame(Frame):
    call_id: str = Field(..., alias="callId", min_length=1)
    chat_id: str = Field(..., alias="chatId", min_length=1)
    receiver_id: int = Field(..., alias="receiverId", gt=0)
    offer: SignalPayload
    call_type: CallType = Field(CallType.AUDIO, alias="callType")

    @field_validator("call_type", mode="before")
    @classmethod
    def default_call_type(cls, v):
        return CallType.AUDIO if v is None else v


class CallAnswerFrame(Frame):
    call_id: str = Field(..., alias="callId", min_length=1)
    answer: SignalPayload


class CallIceCandidateFrame(Frame):
    call_id: str = Field(..., alias="callId", min_length=1)
    candidate: SignalPayload


class CallEndFrame(Frame):
    call_id: str = Field(..., alias="callId", min_length=1)
    reason: str = "user_ended"

    @field_validator("reason", mode="before")
    @classmethod
    def default_reason(cls, v):
        return "user_ended" if v is None else v


class CallDeclineFrame(Frame):
    call_id: str = Field(..., alias="callId", min_length=1)


FRAME_MODELS: Dict[InboundType, Type[Frame]] = {
    InboundType.AUTH: AuthFrame,
    InboundType.PING: PingFrame,
    InboundType.TYPING: ChatFrame,
    InboundType.STOPPED_TYPING: ChatFrame,
    InboundType.SEND_MESSAGE: SendMessageFrame,
    InboundType.MESSAGE: SendMessageFrame,
    InboundType.JOIN_CHAT: ChatFrame,
    InboundType.LEAVE_CHAT: LeaveChatFrame,
    InboundType.MARK_READ: ChatFrame,
    InboundType.CALL_OFFER: CallOfferFrame,
    InboundType.CALL_ANSWER: CallAnswerFrame,
    InboundType.CALL_ICE_CANDIDATE: CallIceCandidateFrame,
    InboundType.CALL_END: CallEndFrame,
    InboundType.CALL_DECLINE: CallDeclineFrame,
}


def parse_envelope(raw: str) -> Tuple[InboundType, Dict[str, Any]]:
    """
    Decode a text frame and identify its type without validating fields.

    Raises:
        MalformedFrameError: not JSON, not an object, or no string 'type'
        UnknownFrameTypeError: 'type' is not an InboundType
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedFrameError(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedFrameError("frame must be a JSON object")

    frame_type = data.get("type")
    if not isinstance(frame_type, str) or not frame_type:
        raise MalformedFrameError("frame has no 'type'")

    try:
        return InboundType(frame_type), data
    except ValueError:
        raise UnknownFrameTypeError(frame_type) from None


def validate_frame(kind: InboundType, data: Dict[str, Any]) -> Frame:
    """
    Validate the fields required by a frame type.

    Raises:
        pydantic.ValidationError: a required field is missing or malformed
    """
    return FRAME_MODELS[kind].model_validate(data)


# =============================================================================
# Outbound Events
# =============================================================================

class Event(BaseModel):
    """Base of every outbound event."""

    # Events whose optional fields are omitted rather than sent as null
    omit_none: ClassVar[bool] = False

    model_config = {"populate_by_name": True}

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=self.omit_none)


class AuthSuccessEvent(Event):
    type: Literal["auth_success"] = "auth_success"
    user_id: int = Field(..., alias="userId")
    username: str


class AuthErrorEvent(Event):
    type: Literal["auth_error"] = "auth_error"
    error: str


class ErrorEvent(Event):
    type: Literal["error"] = "error"
    message: str


class CallErrorEvent(Event):
    omit_none: ClassVar[bool] = True

    type: Literal["call_error"] = "call_error"
    call_id: Optional[str] = Field(None, alias="callId")
    error: str
    message: Optional[str] = None


class PongEvent(Event):
    type: Literal["pong"] = "pong"


class TypingEvent(Event):
    type: Literal["typing"] = "typing"
    chat_id: str = Field(..., alias="chatId")
    user_id: int = Field(..., alias="userId")
    user_name: Optional[str] = Field(None, alias="userName")
    is_typing: bool = Field(True, alias="isTyping")


class StoppedTypingEvent(Event):
    type: Literal["stopped_typing"] = "stopped_typing"
    chat_id: str = Field(..., alias="chatId")
    user_id: int = Field(..., alias="userId")
    is_typing: bool = Field(False, alias="isTyping")


class MessagePayload(BaseModel):
    """Canonical chat message as delivered to clients."""
    id: str
    chat_id: str = Field(..., alias="chatId")
    sender_id: str = Field(..., alias="senderId")
    sender_name: Optional[str] = Field(None, alias="senderName")
    content: str
    timestamp: str = Field(..., description="ISO-8601 UTC creation time")
    type: str = "text"
    status: MessageStatus

    model_config = {"populate_by_name": True}


class MessageEvent(Event):
    type: Literal["message"] = "message"
    message: MessagePayload


class MessageSentEvent(Event):
    omit_none: ClassVar[bool] = True

    type: Literal["message_sent"] = "message_sent"
    temp_id: Optional[Union[str, int]] = Field(None, alias="tempId")
    message: MessagePayload


class MessageReadEvent(Event):
    type: Literal["message_read"] = "message_read"
    chat_id: str = Field(..., alias="chatId")
    message_id: str = Field(..., alias="messageId")
    read_by: int = Field(..., alias="readBy")
    status: MessageStatus = MessageStatus.READ


class UserPresenceEvent(Event):
    type: Literal["user_online", "user_offline"]
    user_id: int = Field(..., alias="userId")
    is_online: bool = Field(..., alias="isOnline")

    @classmethod
    def for_user(cls, user_id: int, online: bool) -> "UserPresenceEvent":
        return cls(
            type="user_online" if online else "user_offline",
            user_id=user_id,
            is_online=online,
        )


class CallOfferEvent(Event):
    type: Literal["call_offer"] = "call_offer"
    call_id: str = Field(..., alias="callId")
    chat_id: str = Field(..., alias="chatId")
    caller_id: str = Field(..., alias="callerId")
    caller_name: str = Field(..., alias="callerName")
    caller_avatar: Optional[str] = Field(None, alias="callerAvatar")
    call_type: CallType = Field(..., alias="callType")
    offer: Any


class CallOfferSentEvent(Event):
    type: Literal["call_offer_sent"] = "call_offer_sent"
    call_id: str = Field(..., alias="callId")
    status: str = "sent"


class CallAnswerEvent(Event):
    type: Literal["call_answer"] = "call_answer"
    call_id: str = Field(..., alias="callId")
    answer: Any


class CallIceCandidateEvent(Event):
    type: Literal["call_ice_candidate"] = "call_ice_candidate"
    call_id: str = Field(..., alias="callId")
    candidate: Any


class CallEndedEvent(Event):
    type: Literal["call_ended"] = "call_ended"
    call_id: str = Field(..., alias="callId")
    reason: str
    duration: Optional[int] = Field(None, description="Seconds since connect, null if never connected")


class CallDeclinedEvent(Event):
    type: Literal["call_declined"] = "call_declined"
    call_id: str = Field(..., alias="callId")


# =============================================================================
# HTTP Response Models
# =============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
