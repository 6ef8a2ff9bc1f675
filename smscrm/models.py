"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, Integer, String, Text

from smscrm.storage import Base


class Message(Base):
    """
    One SMS, inbound or outbound.

    Table: sms_messages
    Primary Key: id
    Unique: provider_message_sid (webhook redelivery is idempotent)

    conversation_id holds the conversation key: a remote conversation SID
    ("CH...") or, for legacy threads, the id of the thread's first message.
    It is nullable because rows predating conversations never got one.
    """
    __tablename__ = "sms_messages"

    id = Column(String, primary_key=True, index=True)
    direction = Column(String, nullable=False)  # inbound | outbound
    from_number = Column(String, nullable=True, index=True)
    to_number = Column(String, nullable=True, index=True)
    body = Column(Text, nullable=True)
    status = Column(String, nullable=True)
    provider = Column(String, nullable=False, default="twilio")
    provider_message_sid = Column(String, nullable=True, unique=True)
    conversation_id = Column(String, nullable=True, index=True)
    sender_phone_number_id = Column(String, nullable=True, index=True)
    media_count = Column(Integer, nullable=False, default=0)
    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    # ISO-8601 UTC strings
    sent_at = Column(String, nullable=True)
    received_at = Column(String, nullable=True)
    delivered_at = Column(String, nullable=True)
    failed_at = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


class SenderAccount(Base):
    """Provider account holding the credentials conversations are created with."""
    __tablename__ = "sender_accounts"

    id = Column(String, primary_key=True, index=True)
    account_name = Column(String, nullable=False)
    provider = Column(String, nullable=False, default="twilio")
    account_sid = Column(String, nullable=False, unique=True)
    auth_token = Column(String, nullable=False)
    # Optional Twilio Conversation Service; conversations are scoped under it
    conversation_service_sid = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class SenderPhoneNumber(Base):
    """A configured sender phone; its number is the proxy address of participant bindings."""
    __tablename__ = "sender_phone_numbers"

    id = Column(String, primary_key=True, index=True)
    account_id = Column(String, nullable=False, index=True)
    phone_number = Column(String, nullable=False, index=True)
    friendly_name = Column(String, nullable=True)
    is_primary = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=True)
    phone = Column(String, nullable=False, index=True)
    crm_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)
