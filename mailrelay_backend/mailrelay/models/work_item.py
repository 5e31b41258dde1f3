"""
Destination store models

WorkItem is the idempotent destination for every stage: keyed by
(tenant_id, external_id), so re-delivery of an applied item is a no-op.
CompetitorSite is the seed list for competitor scraping.
"""
from enum import Enum

from sqlalchemy import (
    Boolean, Column, DateTime, Index, Integer, JSON, String, Text, UniqueConstraint
)

from mailrelay.core.database import Base
from mailrelay.core.utils import utcnow


class WorkItemStatus(str, Enum):
    SCANNED = "scanned"    # Metadata imported, waiting for body / classification
    PENDING = "pending"    # Returned for retry by a failed sub-batch
    DONE = "done"          # Final stage applied
    FAILED = "failed"      # Exceeded MAX_ITEM_ATTEMPTS, dead-lettered


class WorkItemKind(str, Enum):
    EMAIL = "email"
    COMPETITOR_PAGE = "competitor_page"


class WorkItem(Base):
    __tablename__ = "work_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    external_id = Column(String(255), nullable=False)
    kind = Column(String(30), nullable=False, default=WorkItemKind.EMAIL.value)
    status = Column(String(20), nullable=False, default=WorkItemStatus.SCANNED.value)

    # Message headers (email) or page identity (competitor pages)
    thread_id = Column(String(255), nullable=True)
    folder = Column(String(20), nullable=True)  # 'sent' / 'inbox'
    from_email = Column(String(320), nullable=True)
    subject = Column(Text, nullable=True)
    snippet = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=True)

    body = Column(Text, nullable=True)
    has_body = Column(Boolean, nullable=False, default=False)

    # Stage output (classification, extracted FAQs)
    result = Column(JSON, nullable=True)

    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_work_items_tenant_external"),
        Index("ix_work_items_tenant_kind_status", "tenant_id", "kind", "status"),
    )


class SiteScrapeStatus(str, Enum):
    PENDING = "pending"
    SCRAPING = "scraping"
    SCRAPED = "scraped"
    ERROR = "error"


class CompetitorSite(Base):
    __tablename__ = "competitor_sites"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    domain = Column(String(255), nullable=False)
    url = Column(Text, nullable=False)
    scrape_status = Column(String(20), nullable=False, default=SiteScrapeStatus.PENDING.value)
    pages_scraped = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "domain", name="uq_competitor_sites_tenant_domain"),
    )
