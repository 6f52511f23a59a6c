"""Request bodies for the conversations API."""

from typing import List, Optional

from pydantic import BaseModel, Field, StrictBool, StrictInt


class CreateDialogRequest(BaseModel):
    user_id: StrictInt = Field(..., description="Account id of the other participant", examples=[1234567890])


class CreateGroupRequest(BaseModel):
    name: str = Field(..., description="Group display name", examples=["Weekend trip"])
    participant_ids: List[StrictInt] = Field(
        default_factory=list,
        description="Members to add besides the creator; duplicates are ignored",
        examples=[[1234567890, 2345678901]],
    )


class RenameGroupRequest(BaseModel):
    name: str = Field(..., examples=["Weekend trip (final)"])


class AddParticipantRequest(BaseModel):
    user_id: StrictInt = Field(..., examples=[1234567890])


class MarkMessagesReadRequest(BaseModel):
    message_ids: List[str] = Field(
        ..., description="Messages of this conversation the caller has seen", min_length=1
    )


class ReadStateRequest(BaseModel):
    is_read: StrictBool = Field(..., description="true marks everything read, false marks everything unread")


class MuteRequest(BaseModel):
    is_muted: StrictBool = True


class SendMessageRequest(BaseModel):
    content: str = Field(..., description="Message text", examples=["See you at 8"])
    replied_to_message_id: Optional[str] = Field(
        None, description="Message in the same conversation this one answers"
    )
    forwarded_from_username: Optional[str] = Field(
        None, description="Original author when the message is a forward", examples=["alice"]
    )


class EditMessageRequest(BaseModel):
    content: str = Field(..., examples=["See you at 9"])
