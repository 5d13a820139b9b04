"""Batch import against the external endpoint.

- client: typed ``httpx`` wrapper for submit and status reads
- feed: push progress feeds (in-process and server-sent events)
- orchestrator: submission, push/poll tracking, retries and the timeout ceiling
"""

from geo_import.importer.client import ImportEndpointClient
from geo_import.importer.feed import EventStreamFeed, FeedSubscription, LocalProgressFeed, ProgressFeed
from geo_import.importer.orchestrator import BatchImportOrchestrator, backoff_delay

__all__ = [
    "BatchImportOrchestrator",
    "EventStreamFeed",
    "FeedSubscription",
    "ImportEndpointClient",
    "LocalProgressFeed",
    "ProgressFeed",
    "backoff_delay",
]
