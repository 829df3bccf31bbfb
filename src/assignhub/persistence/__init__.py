"""Persistence layer — transactional document store and audit event log."""

from assignhub.persistence.document_store import DocumentStore, StoreTransaction
from assignhub.persistence.event_log import EventKind, EventLog, EventRecord

__all__ = [
    "DocumentStore",
    "EventKind",
    "EventLog",
    "EventRecord",
    "StoreTransaction",
]
