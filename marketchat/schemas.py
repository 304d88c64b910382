"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation (unknown fields rejected)
- Response models for conversations, messages and notifications
- Live event envelopes pushed over the WebSocket channels
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from marketchat.models import NotificationType


# =============================================================================
# Pydantic Request Models
# =============================================================================

class ConversationCreateRequest(BaseModel):
    """
    Body for POST /conversations.

    service_id is only recorded when the conversation is first created.
    """
    buyer_id: str = Field(..., min_length=1, description="Buyer identity")
    vendor_id: str = Field(..., min_length=1, description="Vendor identity")
    service_id: Optional[str] = Field(None, description="Originating service reference")

    model_config = ConfigDict(extra="forbid")


class MessageCreateRequest(BaseModel):
    # Blank content is rejected by the message log (InvalidInput)
    sender_id: str = Field(..., min_length=1)
    content: str

    model_config = ConfigDict(extra="forbid")


class MarkReadRequest(BaseModel):
    reader_id: str = Field(..., min_length=1)

    model_config = ConfigDict(extra="forbid")


class NotificationCreateRequest(BaseModel):
    """Body for POST /notifications, used by order, payment and chat producers."""
    user_id: str = Field(..., min_length=1)
    type: NotificationType = NotificationType.SYSTEM
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1)
    link: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")
    code: str = Field(..., description="Stable error kind")


class MessageResponse(BaseModel):
    id: int = Field(..., description="Message ordinal within the store")
    conversation_id: str
    sender_id: str
    content: str
    is_read: bool
    created_at: str

    model_config = ConfigDict(from_attributes=True)


class MessagesListResponse(BaseModel):
    """
    Response model for GET /conversations/{id}/messages.

    high_water is the ordinal to pass as `since` on the next call (or on
    the live socket) to continue without re-reading.
    """
    data: list[MessageResponse] = Field(default_factory=list)
    high_water: Optional[int] = Field(None, description="Largest ordinal seen")


class ParticipantDisplay(BaseModel):
    name: str
    avatar_url: Optional[str] = None


class ConversationResponse(BaseModel):
    id: str
    buyer_id: str
    vendor_id: str
    service_id: Optional[str] = None
    created_at: str
    updated_at: str

    model_config = ConfigDict(from_attributes=True)


class ConversationSummary(ConversationResponse):
    """A conversation decorated for inbox display."""
    buyer: ParticipantDisplay
    vendor: ParticipantDisplay
    last_message: Optional[str] = None
    unread_count: int = 0


class ConversationsListResponse(BaseModel):
    data: list[ConversationSummary] = Field(default_factory=list)


class MarkReadResponse(BaseModel):
    updated: int = Field(..., ge=0, description="Items flipped to read by this call")


class NotificationResponse(BaseModel):
    id: str
    user_id: str
    type: NotificationType
    title: str
    body: str
    link: Optional[str] = None
    is_read: bool
    created_at: str

    model_config = ConfigDict(from_attributes=True)


class NotificationSummary(NotificationResponse):
    recipient: ParticipantDisplay


class NotificationsListResponse(BaseModel):
    """
    Response model for GET /users/{user_id}/notifications.

    data is bounded to `limit`; unread_count is the exact total.
    """
    data: list[NotificationSummary] = Field(default_factory=list)
    unread_count: int = Field(..., ge=0)
    limit: int = Field(..., ge=1)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Live Event Envelopes
# =============================================================================

class LiveEvent(BaseModel):
    """Frame pushed to WebSocket subscribers."""
    type: str  # message.created | notification.created | channel.closed
    data: dict = Field(default_factory=dict)
