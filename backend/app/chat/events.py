"""Wire events exchanged over a relay WebSocket.

Inbound events are a tagged union over ``type``. A frame without ``type`` is
a chat message (older clients never tag them). Any other unknown tag is
rejected as :class:`MalformedEvent` instead of being probed for fields.

Inbound:
    - message: {recipient, text?, file?: {name, data}, sendTime}
    - read: {message_id, recipient?, sender?, sendTime?}
    - selected_user_change: {selectedUserId}
    - pong: liveness reply
    - authenticate: {token} (late identity attach)

Outbound:
    - online snapshot: {online: [{userId, username}, ...]}
    - inbound message: the persisted message record
    - all-read: {type: "all-read", reader}
    - read: {type: "read", message_id, sendTime, viewedPartnerOfReader?}
    - ping: {type: "ping"}
    - error: {type: "error", error, sendTime?}
"""
import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from app.auth.verifier import Identity
from .errors import MalformedEvent

# =============================================================================
# Inbound
# =============================================================================


class AttachmentPayload(BaseModel):
    """Inline attachment: original filename plus base64 data URL."""
    name: str = Field(..., min_length=1)
    data: str = Field(..., min_length=1)


class SendMessageEvent(BaseModel):
    # sendTime is opaque; clients often send a millisecond timestamp number
    model_config = ConfigDict(coerce_numbers_to_str=True)

    type: Literal["message"] = "message"
    recipient: str = Field(..., min_length=1)
    text: Optional[str] = None
    file: Optional[AttachmentPayload] = None
    # Older clients send the correlation token as "_id"
    sendTime: str = Field(..., validation_alias=AliasChoices("sendTime", "_id"))

    @model_validator(mode="after")
    def _has_body(self) -> "SendMessageEvent":
        if not self.text and self.file is None:
            raise ValueError("a message needs text or a file")
        return self


class MarkReadEvent(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    type: Literal["read"]
    message_id: str = Field(..., min_length=1)
    # Informational only; the server resolves both parties from the record
    recipient: Optional[str] = None
    sender: Optional[str] = None
    sendTime: Optional[str] = None


class SelectedUserChangeEvent(BaseModel):
    type: Literal["selected_user_change"]
    selectedUserId: Optional[str]


class PongEvent(BaseModel):
    type: Literal["pong"]


class AuthenticateEvent(BaseModel):
    type: Literal["authenticate"]
    token: str = Field(..., min_length=1)


InboundEvent = Annotated[
    Union[SendMessageEvent, MarkReadEvent, SelectedUserChangeEvent, PongEvent, AuthenticateEvent],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundEvent)

INBOUND_TYPES = frozenset({"message", "read", "selected_user_change", "pong", "authenticate"})


def parse_inbound_event(raw: Union[str, bytes, Dict[str, Any]]) -> InboundEvent:
    """Decode and validate one inbound frame.

    Raises:
        MalformedEvent: On invalid JSON, a non-object payload, an unknown
            ``type`` or missing/invalid fields.
    """
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as e:
            raise MalformedEvent(f"Invalid JSON: {e}")
    else:
        data = raw

    if not isinstance(data, dict):
        raise MalformedEvent("Event must be a JSON object")

    data = dict(data)
    data.setdefault("type", "message")
    event_type = data["type"]
    if event_type not in INBOUND_TYPES:
        raise MalformedEvent(f"Unknown event type: {event_type!r}")

    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'event'}: {err['msg']}"
            for err in e.errors()
        )
        send_time = data.get("sendTime", data.get("_id"))
        raise MalformedEvent(
            f"Invalid {event_type} event: {details}",
            send_time=str(send_time) if send_time is not None else None,
        )


# =============================================================================
# Outbound
# =============================================================================


class OnlineSnapshot(BaseModel):
    online: List[Identity]

    def payload(self) -> dict:
        return self.model_dump()


class AllReadEvent(BaseModel):
    type: Literal["all-read"] = "all-read"
    reader: str

    def payload(self) -> dict:
        return self.model_dump()


class MessageReadEvent(BaseModel):
    type: Literal["read"] = "read"
    message_id: str
    sendTime: Optional[str] = None
    viewedPartnerOfReader: Optional[str] = None

    def payload(self) -> dict:
        data = self.model_dump()
        # Absent means "unknown" to the client; never send null
        if data["viewedPartnerOfReader"] is None:
            del data["viewedPartnerOfReader"]
        return data


class ErrorEvent(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    type: Literal["error"] = "error"
    error: str
    sendTime: Optional[str] = None

    def payload(self) -> dict:
        return self.model_dump(exclude_none=True)


PING_EVENT = {"type": "ping"}
