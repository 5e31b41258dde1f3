"""
Stage adapters

One adapter per pipeline stage; the Batch Runner drives them all the same way.
"""
from mailrelay.jobs.adapters.base import Page, ProviderRunStatus, StageAdapter, WorkRef
from mailrelay.jobs.adapters.competitor_scrape import CompetitorScrapeAdapter
from mailrelay.jobs.adapters.email_classify import EmailClassifyAdapter
from mailrelay.jobs.adapters.email_import import EmailImportAdapter
from mailrelay.jobs.adapters.mailbox_sync import MailboxSyncAdapter

__all__ = [
    "Page",
    "ProviderRunStatus",
    "StageAdapter",
    "WorkRef",
    "CompetitorScrapeAdapter",
    "EmailClassifyAdapter",
    "EmailImportAdapter",
    "MailboxSyncAdapter",
]
