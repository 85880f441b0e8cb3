"""
Pydantic schemas for request/response validation.
"""
from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from messaging.services.delivery import (
    Addressing,
    ByDynamicQuery,
    ByRole,
    BySpecificUser,
)


class DirectAddress(BaseModel):
    kind: Literal["user"] = "user"
    user_id: int

    def to_addressing(self) -> Addressing:
        return BySpecificUser(self.user_id)


class RoleAddress(BaseModel):
    kind: Literal["role"] = "role"
    audience: str = Field(..., min_length=1, max_length=100, description="Broadcast class, e.g. all, registered")

    def to_addressing(self) -> Addressing:
        return ByRole(self.audience)


class DynamicAddress(BaseModel):
    kind: Literal["dynamic"] = "dynamic"
    predicate: str = Field(..., min_length=1, max_length=100, description="Registered audience predicate")

    def to_addressing(self) -> Addressing:
        return ByDynamicQuery(self.predicate)


Address = Annotated[Union[DirectAddress, RoleAddress, DynamicAddress], Field(discriminator="kind")]


class AttachmentIn(BaseModel):
    """An attachment already uploaded to object storage."""

    filename: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1, max_length=2048)
    content_type: str = Field(default="application/octet-stream", max_length=255)
    size: int = Field(default=0, ge=0)


class ComposeRequest(BaseModel):
    """Request schema for POST /messages."""

    recipient: Optional[Address] = None
    subject: Optional[str] = Field(default=None, max_length=500)
    content: Optional[str] = Field(default=None, max_length=20000)
    attachments: List[AttachmentIn] = Field(default_factory=list)
    template_id: Optional[str] = Field(default=None, max_length=100)
    template_version: Optional[int] = Field(default=None, ge=1)
    context: Dict[str, str] = Field(default_factory=dict, description="Extra placeholder values for templates")

    model_config = {
        "json_schema_extra": {
            "example": {
                "recipient": {"kind": "role", "audience": "registered"},
                "subject": "Pool closed Friday",
                "content": "The community pool is closed for maintenance on Friday.",
            }
        }
    }

    @model_validator(mode="after")
    def check_source(self) -> "ComposeRequest":
        """A message is either written directly or rendered from a template."""
        if self.template_id is None:
            if self.recipient is None:
                raise ValueError("recipient is required unless template_id is given")
            if not self.subject or not self.content:
                raise ValueError("subject and content are required unless template_id is given")
        return self


class ReplyRequest(BaseModel):
    """Request schema for POST /messages/{id}/reply."""

    content: str = Field(..., min_length=1, max_length=20000)
    subject: Optional[str] = Field(default=None, max_length=500)
    recipient: Optional[Address] = None
    attachments: List[AttachmentIn] = Field(default_factory=list)


class AttachmentResponse(BaseModel):
    id: str
    filename: str
    url: str
    content_type: str
    size: int

    model_config = {"from_attributes": True}


class MessageResponse(BaseModel):
    """Schema for a single message in responses."""

    id: int
    sender_id: int
    subject: str
    content: str
    message_type: str
    target: Optional[str] = None
    in_reply_to: Optional[int] = None
    template_id: Optional[str] = None
    template_version: Optional[int] = None
    attachments: List[AttachmentResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: Optional[datetime] = None
    read: Optional[bool] = None

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    """Response schema for GET /messages."""

    data: List[MessageResponse]
    total: int


class RecipientOption(BaseModel):
    id: int
    username: str
    full_name: Optional[str] = None
    role: str

    model_config = {"from_attributes": True}


class RecipientsResponse(BaseModel):
    """Response schema for GET /messages/recipients."""

    data: List[RecipientOption]
    total: int


class ComposeResponse(BaseModel):
    """Response schema for POST /messages; template sends may create several messages."""

    data: List[MessageResponse]
    recipients: int


class ThreadResponse(BaseModel):
    root: MessageResponse
    replies: List[MessageResponse]
    is_unread: bool
    last_activity: Optional[datetime] = None
    parents: Dict[int, int] = Field(default_factory=dict)


class InboxResponse(BaseModel):
    """Response schema for GET /messages/threads."""

    threads: List[ThreadResponse]
    total: int
    unread_threads: int


class UnreadCountResponse(BaseModel):
    count: int


class ReadResponse(BaseModel):
    message_id: int
    read: bool
    read_at: Optional[datetime] = None


class StatusResponse(BaseModel):
    status: str = Field(default="ok")


class TemplateResponse(BaseModel):
    id: str
    version: int
    name: str
    description: str
    subject: str
    content: str
    target_type: str
    target_recipient: Optional[str] = None
    target_query: Optional[str] = None
    placeholders: List[str]


class TemplatePreviewRequest(BaseModel):
    """Render a template against a user's profile and/or explicit values."""

    user_id: Optional[int] = None
    version: Optional[int] = Field(default=None, ge=1)
    context: Dict[str, str] = Field(default_factory=dict)


class RenderedResponse(BaseModel):
    subject: str
    content: str


class ContactRequest(BaseModel):
    """Request schema for POST /contact."""

    inquiry_type: Literal["bug", "feature", "feedback"]
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=10000)
    name: str = Field(..., min_length=1, max_length=150)
    email: Optional[str] = Field(default=None, max_length=255)
    user_id: Optional[int] = None


class ContactResponse(BaseModel):
    status: str = Field(default="ok")
    message_id: int


class SenderCount(BaseModel):
    sender_id: int
    count: int


class StatsResponse(BaseModel):
    """Response schema for GET /stats."""

    total_messages: int
    total_deliveries: int
    unread_deliveries: int
    senders_count: int
    messages_per_sender: List[SenderCount]
    messages_per_type: Dict[str, int]
    first_message_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None


class HealthResponse(BaseModel):
    """Response schema for health endpoints."""

    status: str
    checks: Optional[dict] = None


class ErrorResponse(BaseModel):
    """Standard error response schema."""

    detail: str
