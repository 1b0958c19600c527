"""Scheduler control plane: document store, control records, audit log."""

from .errors import ControlPlaneError, InvalidControlField, StoreUnavailable, UnknownJobId
from .models import ControlRecord, EventType, RunOutcome, SchedulerEvent, SchedulerStatus
from .service import SchedulerControlStore
from .store import DocumentStore, MemoryDocumentStore, SqliteDocumentStore, open_store
