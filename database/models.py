"""
SQLAlchemy ORM models for connector persistence.

Column types are dialect-neutral (``JSON`` rather than ``JSONB``) so the
same schema runs on SQLite via aiosqlite and on PostgreSQL via asyncpg.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ConnectorRecord(Base):
    __tablename__ = "connectors"

    id = Column(String(64), primary_key=True)
    provider = Column(String(32), nullable=False)
    name = Column(String(256), nullable=False, default="")
    status = Column(String(16), nullable=False, default="connected")

    encrypted_token = Column(Text)
    encrypted_refresh_token = Column(Text)
    token_iv = Column(String(64))
    refresh_token_iv = Column(String(64))
    token_expires_at = Column(DateTime(timezone=True))
    scopes = Column(JSON, default=list)

    account_id = Column(String(256))
    account_email = Column(String(256))
    account_picture = Column(Text)

    sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_folders = Column(JSON)
    sync_interval = Column(Integer, nullable=False, default=30)

    error_message = Column(Text)
    last_sync_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now)

    __table_args__ = (Index("ix_connectors_provider_account", "provider", "account_id"),)


class SyncStateRecord(Base):
    __tablename__ = "connector_sync_states"

    connector_id = Column(String(64), ForeignKey("connectors.id", ondelete="CASCADE"), primary_key=True)
    cursor = Column(Text)
    last_sync_at = Column(DateTime(timezone=True))
    items_synced = Column(Integer, nullable=False, default=0)
    sync_type = Column(String(8), nullable=False, default="full")
    status = Column(String(16), nullable=False, default="idle")
    error_message = Column(Text)


class EncryptionMetadataRecord(Base):
    """Key/value rows: ``connector-{id}-iv``, ``connector-{id}-salt`` …"""

    __tablename__ = "encryption_metadata"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
