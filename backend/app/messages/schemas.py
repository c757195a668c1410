"""Pydantic schemas for persisted direct messages and user records.

A message is created once by the relay and mutated at most once afterwards,
when the recipient reads it (``readByRecipient`` flips false -> true and
never reverts).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


class FileRef(BaseModel):
    """Reference to a stored attachment. The bytes live in the upload dir."""
    name: str = Field(..., description="Stored attachment name")


class Message(BaseModel):
    """A persisted direct message.

    Attributes:
        id: Unique message identifier (generated by the server).
        sender: User ID of the author.
        recipient: User ID of the addressee.
        text: Message text, if any.
        file: Attachment reference, if any.
        createdAt: Server timestamp (UTC); history is ordered by it.
        readByRecipient: Whether the recipient has read the message.
        sendTime: Opaque client token correlating the optimistic client-side
            copy of the message with this record.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Message ID")
    sender: str = Field(..., description="Sender user ID")
    recipient: str = Field(..., description="Recipient user ID")
    text: Optional[str] = Field(default=None, description="Message text")
    file: Optional[FileRef] = Field(default=None, description="Attachment reference")
    # Naive UTC: the store column is a plain TIMESTAMP
    createdAt: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc).replace(tzinfo=None),
        description="Creation time (UTC)",
    )
    readByRecipient: bool = Field(default=False, description="Read by recipient")
    sendTime: Optional[str] = Field(default=None, description="Client correlation token")


class UserRecord(BaseModel):
    """A user known to the directory."""
    userId: str
    username: str
