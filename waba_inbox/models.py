"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import JSON, Boolean, Column, Integer, String, Text

from waba_inbox.storage import Base


class Tenant(Base):
    """
    A business account that owns one WhatsApp phone number.

    Table: tenants
    channel_id is the provider's phone_number_id (attribution key).
    verify_token is the per-tenant webhook verification secret.
    """
    __tablename__ = "tenants"

    id = Column(String, primary_key=True)
    channel_id = Column(String, nullable=True, unique=True, index=True)
    access_token = Column(Text, nullable=True)
    api_version = Column(String, nullable=True)
    verify_token = Column(String, nullable=True, unique=True, index=True)
    webhook_verified = Column(Boolean, nullable=False, default=False)
    updated_at = Column(String, nullable=True)  # ISO-8601 UTC


class Contact(Base):
    """
    A counterpart phone number that has written to any tenant.

    Table: contacts
    Primary Key: phone. name is never overwritten by inbound traffic.
    """
    __tablename__ = "contacts"

    phone = Column(String, primary_key=True)
    name = Column(Text, nullable=True)
    last_active = Column(String, nullable=True)  # ISO-8601 UTC
    created_at = Column(String, nullable=False)


class Message(Base):
    """
    A persisted conversation entry.

    Table: messages
    seq records insertion order; id is the provider message id and is
    unique, which makes redelivery of the same message a no-op.
    """
    __tablename__ = "messages"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True, index=True)
    sender_id = Column(String, nullable=False, index=True)
    receiver_id = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    timestamp = Column(String, nullable=False, index=True)  # ISO-8601 UTC
    is_sent_by_me = Column(Boolean, nullable=False, default=False)
    is_read = Column(Boolean, nullable=False, default=False)
    message_type = Column(String, nullable=False)
    media_data = Column(JSON(none_as_null=True), nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
