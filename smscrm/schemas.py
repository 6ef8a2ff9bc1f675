"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator

# Loose E.164: optional +, then 2-15 digits once formatting is stripped
_PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
_PHONE_FORMATTING = re.compile(r"[\s\-().]")


def _validate_phone(value: str, field_name: str) -> str:
    if not _PHONE_PATTERN.match(_PHONE_FORMATTING.sub("", value.strip())):
        raise ValueError(f"{field_name} is not a valid phone number")
    return value.strip()


# =============================================================================
# Pydantic Request Models
# =============================================================================

class ResolveConversationRequest(BaseModel):
    customer_phone: str = Field(..., min_length=1, description="Customer phone number")
    sender_phone_number_id: str = Field(..., min_length=1, description="Configured sender phone id")

    @field_validator("customer_phone")
    @classmethod
    def validate_customer_phone(cls, v: str) -> str:
        return _validate_phone(v, "customer_phone")


class SendSmsRequest(BaseModel):
    """
    Outbound SMS request.

    Validates:
    - to: phone number (formatting characters allowed)
    - message: non-empty, max 1600 characters (Twilio's concatenated SMS limit)
    - sender_phone_number_id: configured sender phone to send from
    """
    to: str = Field(..., description="Customer phone number")
    message: str = Field(..., min_length=1, max_length=1600, description="Message body")
    sender_phone_number_id: str = Field(..., min_length=1, description="Configured sender phone id")

    @field_validator("to")
    @classmethod
    def validate_to(cls, v: str) -> str:
        return _validate_phone(v, "to")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "to": "+15559990000",
                    "message": "Hello",
                    "sender_phone_number_id": "0b7a3c9e-6f1d-4c43-9a57-2f1f5d0c9e11",
                }
            ]
        }
    }


class SenderAccountCreate(BaseModel):
    account_name: str = Field(..., min_length=1)
    account_sid: str = Field(..., min_length=1)
    auth_token: str = Field(..., min_length=1)
    conversation_service_sid: Optional[str] = Field(
        None,
        description="Twilio Conversation Service SID conversations are scoped under"
    )
    is_active: bool = True


class SenderPhoneNumberCreate(BaseModel):
    account_id: str = Field(..., min_length=1)
    phone_number: str = Field(..., description="Sender phone number")
    friendly_name: Optional[str] = None
    is_primary: bool = False
    is_active: bool = True

    @field_validator("phone_number")
    @classmethod
    def validate_phone_number(cls, v: str) -> str:
        return _validate_phone(v, "phone_number")


class ContactCreate(BaseModel):
    phone: str
    name: Optional[str] = None
    crm_id: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        return _validate_phone(v, "phone")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class ResolutionErrorDetail(BaseModel):
    kind: str = Field(..., description="configuration | conflict | transient | remote")
    code: str
    message: str
    provider_code: Optional[int] = None
    retryable: bool = False


class ResolutionErrorResponse(BaseModel):
    detail: ResolutionErrorDetail


class ResolveConversationResponse(BaseModel):
    conversation_id: str
    participants_added: int = Field(..., ge=0)
    created: bool = False


class ContactResponse(BaseModel):
    id: str
    name: Optional[str] = None
    phone: str
    crm_id: Optional[str] = None

    model_config = {"from_attributes": True}


class LastMessageResponse(BaseModel):
    body: Optional[str] = None
    timestamp: Optional[str] = None
    direction: Optional[str] = None

    model_config = {"from_attributes": True}


class ConversationResponse(BaseModel):
    conversation_id: str = Field(..., description="Conversation key grouping the thread")
    phone_number: str = Field(..., description="Canonical customer phone")
    last_message: Optional[LastMessageResponse] = None
    sender_phones: list[str] = Field(default_factory=list)
    contact: Optional[ContactResponse] = None
    message_count: int = Field(0, ge=0)

    model_config = {"from_attributes": True}


class ConversationsListResponse(BaseModel):
    conversations: list[ConversationResponse] = Field(default_factory=list)


class DeleteConversationResponse(BaseModel):
    success: bool = True
    deleted_count: int = Field(..., ge=0)
    remote_deleted: bool = False


class MessageResponse(BaseModel):
    """
    Response model for a single message in a thread.
    Maps database fields to API response format.
    """
    id: str
    direction: str
    from_number: Optional[str] = Field(None, alias="from")
    to_number: Optional[str] = Field(None, alias="to")
    body: Optional[str] = None
    status: Optional[str] = None
    conversation_id: Optional[str] = None
    provider_message_sid: Optional[str] = None
    media_count: int = 0
    timestamp: Optional[str] = None

    model_config = {
        "populate_by_name": True,
        "from_attributes": True,
    }


class MessagesListResponse(BaseModel):
    messages: list[MessageResponse] = Field(default_factory=list)


class SendSmsResponse(BaseModel):
    success: bool = True
    conversation_id: str
    message_sid: str
    participants_added: int = Field(0, ge=0)
    message: Optional[MessageResponse] = None


class StatusUpdateResponse(BaseModel):
    success: bool = True


class SenderAccountResponse(BaseModel):
    """Sender account without its auth token."""
    id: str
    account_name: str
    provider: str
    account_sid: str
    conversation_service_sid: Optional[str] = None
    is_active: bool

    model_config = {"from_attributes": True}


class SenderPhoneNumberResponse(BaseModel):
    id: str
    account_id: str
    phone_number: str
    friendly_name: Optional[str] = None
    is_primary: bool
    is_active: bool

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
