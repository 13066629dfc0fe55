"""Shared fixtures for the Flux test suites."""

from datetime import datetime, timedelta, timezone

import pytest

from flux.adapters import MemoryAdapter
from flux.quotes import QuoteEngine
from flux.store import FluxStore
from flux.webhooks import WebhookDispatcher
from flux.workflow import WorkflowManager


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingHandler:
    """Webhook handler that remembers every call."""

    def __init__(self):
        self.calls = []

    def __call__(self, event, payload, webhook):
        self.calls.append((event, payload, webhook))

    @property
    def events(self):
        return [event for event, _, _ in self.calls]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def adapter():
    return MemoryAdapter()


@pytest.fixture
def store(adapter, clock):
    flux_store = FluxStore(adapter, clock=clock)
    flux_store.init()
    return flux_store


@pytest.fixture
def quotes(store):
    return QuoteEngine(store)


@pytest.fixture
def handler():
    return RecordingHandler()


@pytest.fixture
def manager(store, quotes, handler):
    return WorkflowManager(store, dispatcher=WebhookDispatcher(store, handler), quotes=quotes)
