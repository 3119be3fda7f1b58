"""
Pydantic schemas for request/response validation.

This module contains:
- Provider webhook envelope models (WhatsApp Cloud API delivery payload)
- Response models for API responses
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Provider Webhook Envelope
# =============================================================================

class _ProviderModel(BaseModel):
    # Provider payloads grow new keys over time; never fail on them
    model_config = ConfigDict(extra="ignore")


class MediaInfo(_ProviderModel):
    """Media payload shared by image, document, audio, video and sticker."""
    id: Optional[str] = None
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    filename: Optional[str] = None
    caption: Optional[str] = None
    voice: Optional[bool] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class TextBody(_ProviderModel):
    body: Optional[str] = None


class RawMessage(_ProviderModel):
    """
    One message as delivered by the provider.

    type is kept as an open string: the classifier decides what is supported.
    """
    id: str = Field(..., min_length=1, description="Provider message id")
    from_phone: str = Field(..., alias="from", min_length=1, description="Sender phone number")
    timestamp: str = Field(..., description="Seconds since epoch, string-encoded")
    type: str = Field(..., description="Provider message type")
    text: Optional[TextBody] = None
    image: Optional[MediaInfo] = None
    document: Optional[MediaInfo] = None
    audio: Optional[MediaInfo] = None
    video: Optional[MediaInfo] = None
    sticker: Optional[MediaInfo] = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("timestamp", mode="before")
    @classmethod
    def coerce_timestamp(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class ContactProfile(_ProviderModel):
    name: Optional[str] = None


class RawContact(_ProviderModel):
    wa_id: str
    profile: Optional[ContactProfile] = None


class Metadata(_ProviderModel):
    phone_number_id: Optional[str] = None
    display_phone_number: Optional[str] = None

    @field_validator("phone_number_id", mode="before")
    @classmethod
    def coerce_phone_number_id(cls, v: Any) -> Any:
        # Provider occasionally sends the id as a JSON number
        return str(v) if isinstance(v, int) else v


class ChangeValue(_ProviderModel):
    metadata: Optional[Metadata] = None
    # Kept raw: one malformed item must not reject its siblings
    messages: list[Any] = Field(default_factory=list)
    contacts: list[Any] = Field(default_factory=list)


class Change(_ProviderModel):
    field: Optional[str] = None
    value: Optional[ChangeValue] = None


class Entry(_ProviderModel):
    id: Optional[str] = None
    # Raw changes, validated one at a time by the pipeline
    changes: list[Any] = Field(default_factory=list)


class WebhookPayload(_ProviderModel):
    """
    Top-level delivery body:
    { entry: [{ changes: [{ value: { metadata, messages, contacts } }] }] }
    """
    object: Optional[str] = None
    entry: list[Any] = Field(default_factory=list)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class MessageResponse(BaseModel):
    """
    Response model for a single stored message.
    Maps database fields to API response format.
    """
    id: str = Field(..., description="Provider message identifier")
    sender_id: str = Field(..., description="Sender phone number")
    receiver_id: str = Field(..., description="Receiving tenant id")
    content: str = Field(..., description="Display content")
    timestamp: str = Field(..., description="Message timestamp (ISO-8601 UTC)")
    is_sent_by_me: bool
    is_read: bool
    message_type: str
    media_data: Optional[dict[str, Any]] = Field(None, description="Media descriptor")

    model_config = ConfigDict(from_attributes=True)


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages endpoint with pagination.
    """
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0, description="Total messages matching filters (ignoring limit/offset)")
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class TypeCount(BaseModel):
    """Model for per-type message count in stats."""
    message_type: str
    count: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    """
    Response model for GET /stats endpoint.
    """
    total_messages: int = Field(..., ge=0)
    senders_count: int = Field(..., ge=0)
    messages_per_type: list[TypeCount] = Field(default_factory=list)
    media_relay_failures: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
