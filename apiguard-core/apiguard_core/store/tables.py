"""
Store Tables
============
ORM mappings for ``security_events`` and ``ip_management``.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class SecurityEventRow(Base):
    """Append-only security event."""
    __tablename__ = "security_events"
    __table_args__ = (
        Index("ix_security_events_ip_kind_ts", "ip_address", "event_kind", "timestamp"),
        Index("ix_security_events_kind_ts", "event_kind", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    event_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    endpoint: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    api_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)


class IPManagementRow(Base):
    """Whitelist/blacklist entry; the latest row per (ip, list_type) is authoritative."""
    __tablename__ = "ip_management"
    __table_args__ = (
        Index("ix_ip_management_ip_type_created", "ip_address", "list_type", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    list_type: Mapped[str] = mapped_column(String(20), nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
