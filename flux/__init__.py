"""Flux core package: store, engines and the shared workflow facade."""

from .adapters import DocumentAdapter, JsonFileAdapter, MemoryAdapter, StorageAdapter
from .config import FluxSettings
from .dependencies import CleanupResult, DependencyEngine
from .errors import (
    ConflictError,
    FluxError,
    InvalidTransitionError,
    LockTimeoutError,
    PersistenceError,
    ValidationError,
    WebhookDeliveryError,
)
from .quotes import QuoteEngine
from .store import FluxStore
from .webhooks import HttpDeliveryHandler, WebhookDispatcher
from .workflow import WorkflowManager, build_manager

__all__ = [
    "CleanupResult",
    "ConflictError",
    "DependencyEngine",
    "DocumentAdapter",
    "FluxError",
    "FluxSettings",
    "FluxStore",
    "HttpDeliveryHandler",
    "InvalidTransitionError",
    "JsonFileAdapter",
    "LockTimeoutError",
    "MemoryAdapter",
    "PersistenceError",
    "QuoteEngine",
    "StorageAdapter",
    "ValidationError",
    "WebhookDeliveryError",
    "WebhookDispatcher",
    "WorkflowManager",
    "build_manager",
]
