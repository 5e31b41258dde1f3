"""
Models Package

Importing this package registers every table with Base.metadata.
"""
from mailrelay.models.job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobKind,
    JobStatus,
    RelayJob,
    RelayLock,
)
from mailrelay.models.work_item import (
    CompetitorSite,
    SiteScrapeStatus,
    WorkItem,
    WorkItemKind,
    WorkItemStatus,
)
from mailrelay.models.pipeline import DeadLetter

__all__ = [
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "JobKind",
    "JobStatus",
    "RelayJob",
    "RelayLock",
    "CompetitorSite",
    "SiteScrapeStatus",
    "WorkItem",
    "WorkItemKind",
    "WorkItemStatus",
    "DeadLetter",
]
