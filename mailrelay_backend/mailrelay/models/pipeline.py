"""
Dead letter storage for the relay engine.

Items land here when the processing API returns output that cannot be
reconciled with any item, or when an item keeps failing past
MAX_ITEM_ATTEMPTS. Parked for review; never retried automatically.
"""
from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from mailrelay.core.database import Base
from mailrelay.core.utils import utcnow


class DeadLetter(Base):
    __tablename__ = "relay_dead_letters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    job_id = Column(String(36), nullable=True)
    job_kind = Column(String(50), nullable=False)
    external_id = Column(String(255), nullable=True)  # Null for malformed output

    reason = Column(String(100), nullable=False)  # 'malformed_output', 'max_attempts'
    raw = Column(Text, nullable=True)             # Truncated payload for debugging

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_relay_dead_letters_tenant_kind", "tenant_id", "job_kind"),
    )
