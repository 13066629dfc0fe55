"""Caller-side facade shared by the MCP and REST surfaces.

``WorkflowManager`` runs a store mutation, then emits the matching domain
events through the webhook dispatcher. Each public call is one store
session: lookups, the mutation and the returned view all see the same
state, and events queued during the call are dispatched after the session
closes, so webhook requests never run while the data file is locked.

Views are plain dicts in the wire format; tasks carry a derived ``blocked``
flag and projects carry ``stats``. Unknown ids come back as
``None``/``False`` and validation problems raise
:class:`~flux.errors.FluxError` subclasses for the surface to translate.
"""

from __future__ import annotations

import functools
import logging
import threading
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .adapters import JsonFileAdapter, MemoryAdapter, StorageAdapter
from .config import FluxSettings
from .dependencies import DependencyEngine
from .flux_logging import log_domain_event, log_performance
from .models import CustomerFilters, ProductFilters, QuoteFilters, TaskFilters
from .quotes import QuoteEngine
from .store import FluxStore
from .webhooks import HttpDeliveryHandler, WebhookDispatcher

logger = logging.getLogger("flux.workflow")


def operation(method):
    """Run a manager call in one store session and dispatch its events afterwards."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        local = self._local
        if getattr(local, "events", None) is not None:
            return method(self, *args, **kwargs)
        local.events = []
        try:
            with self.store.session():
                result = method(self, *args, **kwargs)
            events = local.events
        finally:
            local.events = None
        for event, data, project_id in events:
            self.dispatcher.trigger(event, data, project_id)
        return result
    return wrapper


class WorkflowManager:
    """One isolated Flux context: store, engines and webhook dispatcher."""

    def __init__(
        self,
        store: FluxStore,
        *,
        dispatcher: Optional[WebhookDispatcher] = None,
        quotes: Optional[QuoteEngine] = None,
        delivery_retention_days: int = 7,
    ):
        self.store = store
        self.dispatcher = dispatcher or WebhookDispatcher(store)
        self.quotes = quotes or QuoteEngine(store)
        self.dependencies = DependencyEngine(store)
        self.delivery_retention_days = delivery_retention_days
        self._local = threading.local()

    def _emit(self, event: str, data: Dict[str, Any], project_id: Optional[str] = None) -> None:
        log_domain_event(event, project_id=project_id)
        pending = getattr(self._local, "events", None)
        if pending is None:
            self.dispatcher.trigger(event, data, project_id)
        else:
            pending.append((event, data, project_id))

    def flush(self, timeout: Optional[float] = None) -> None:
        self.store.adapter.flush(timeout)

    def close(self) -> None:
        handler = self.dispatcher.handler
        if isinstance(handler, HttpDeliveryHandler):
            handler.close()
        close_adapter = getattr(self.store.adapter, "close", None)
        if callable(close_adapter):
            close_adapter()
        else:
            self.flush()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def _project_view(self, project) -> Dict[str, Any]:
        return {**project.to_dict(), "stats": self.store.project_stats(project.id)}

    @operation
    def list_projects(self) -> List[Dict[str, Any]]:
        return [self._project_view(p) for p in self.store.list_projects()]

    @operation
    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        project = self.store.get_project(project_id)
        return self._project_view(project) if project else None

    @operation
    def create_project(self, name: str, description: Optional[str] = None) -> Dict[str, Any]:
        project = self.store.create_project(name, description)
        self._emit("project.created", {"project": project.to_dict()}, project.id)
        return self._project_view(project)

    @operation
    def update_project(self, project_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        project = self.store.get_project(project_id)
        if project is None:
            return None
        previous = project.to_dict()
        self.store.update_project(project_id, updates)
        self._emit("project.updated", {"project": project.to_dict(), "previous": previous}, project_id)
        return self._project_view(project)

    @operation
    def delete_project(self, project_id: str) -> bool:
        project = self.store.get_project(project_id)
        if project is None:
            return False
        snapshot = project.to_dict()
        self.store.delete_project(project_id)
        self._emit("project.deleted", {"project": snapshot}, project_id)
        return True

    # ------------------------------------------------------------------
    # Epics
    # ------------------------------------------------------------------

    def _epic_view(self, epic) -> Dict[str, Any]:
        return {**epic.to_dict(), "blocked": self.dependencies.is_epic_blocked(epic.id)}

    @operation
    def list_epics(self, project_id: str) -> Optional[List[Dict[str, Any]]]:
        if self.store.get_project(project_id) is None:
            return None
        return [self._epic_view(e) for e in self.store.list_epics(project_id)]

    @operation
    def get_epic(self, epic_id: str) -> Optional[Dict[str, Any]]:
        epic = self.store.get_epic(epic_id)
        return self._epic_view(epic) if epic else None

    @operation
    def create_epic(self, project_id: str, title: str, notes: str = "") -> Optional[Dict[str, Any]]:
        if self.store.get_project(project_id) is None:
            return None
        epic = self.store.create_epic(project_id, title, notes)
        self._emit("epic.created", {"epic": epic.to_dict()}, project_id)
        return self._epic_view(epic)

    @operation
    def update_epic(self, epic_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        epic = self.store.get_epic(epic_id)
        if epic is None:
            return None
        previous = epic.to_dict()
        self.store.update_epic(epic_id, updates)
        self._emit("epic.updated", {"epic": epic.to_dict(), "previous": previous}, epic.project_id)
        return self._epic_view(epic)

    @operation
    def delete_epic(self, epic_id: str) -> bool:
        epic = self.store.get_epic(epic_id)
        if epic is None:
            return False
        snapshot = epic.to_dict()
        self.store.delete_epic(epic_id)
        self._emit("epic.deleted", {"epic": snapshot}, epic.project_id)
        return True

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @operation
    def list_tasks(self, project_id: str, filters: Optional[TaskFilters] = None) -> Optional[List[Dict[str, Any]]]:
        if self.store.get_project(project_id) is None:
            return None
        return [self.dependencies.task_view(t) for t in self.store.list_tasks(project_id, filters)]

    @operation
    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        return self.dependencies.task_view(self.store.get_task(task_id))

    @operation
    def blocking_tasks(self, task_id: str) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self.dependencies.blocking_tasks(task_id)]

    @operation
    def create_task(
        self,
        project_id: str,
        title: str,
        epic_id: Optional[str] = None,
        notes: str = "",
        agent: Optional[str] = None,
        depends_on: Optional[List[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        if self.store.get_project(project_id) is None:
            return None
        task = self.store.create_task(project_id, title, epic_id=epic_id, notes=notes, agent=agent, depends_on=depends_on)
        self._emit("task.created", {"task": task.to_dict()}, project_id)
        return self.dependencies.task_view(task)

    @operation
    def update_task(self, task_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """Update a task and emit ``task.updated`` plus status/archive events as they apply."""
        task = self.store.get_task(task_id)
        if task is None:
            return None
        previous = task.to_dict()
        self.store.update_task(task_id, updates)

        events = ["task.updated"]
        if task.status != previous["status"]:
            events.append("task.status_changed")
        if task.archived and not previous["archived"]:
            events.append("task.archived")
        data = {"task": task.to_dict(), "previous": previous}
        for event in events:
            self._emit(event, data, task.project_id)
        return self.dependencies.task_view(task)

    @operation
    def move_task_status(self, task_id: str, status: str) -> Optional[Dict[str, Any]]:
        return self.update_task(task_id, {"status": status})

    @operation
    def delete_task(self, task_id: str) -> bool:
        task = self.store.get_task(task_id)
        if task is None:
            return False
        snapshot = task.to_dict()
        self.store.delete_task(task_id)
        self._emit("task.deleted", {"task": snapshot}, task.project_id)
        return True

    @operation
    def add_dependency(self, task_id: str, depends_on_id: str) -> Optional[Dict[str, Any]]:
        if not self.dependencies.add_dependency(task_id, depends_on_id):
            return None
        return self.get_task(task_id)

    @operation
    def remove_dependency(self, task_id: str, depends_on_id: str) -> Optional[Dict[str, Any]]:
        if not self.dependencies.remove_dependency(task_id, depends_on_id):
            return None
        return self.get_task(task_id)

    @log_performance("workflow_cleanup_project")
    @operation
    def cleanup_project(
        self, project_id: str, archive_tasks: bool = True, archive_epics: bool = True
    ) -> Optional[Dict[str, int]]:
        """Archive done tasks and drop empty epics, emitting ``task.archived`` per task."""
        if self.store.get_project(project_id) is None:
            return None
        result = self.dependencies.cleanup_project(project_id, archive_tasks, archive_epics)
        for task in result.archived:
            self._emit("task.archived", {"task": task.to_dict()}, project_id)
        return result.to_dict()

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    @operation
    def list_products(self, filters: Optional[ProductFilters] = None) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.store.list_products(filters)]

    @operation
    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        product = self.store.get_product(product_id)
        return product.to_dict() if product else None

    @operation
    def get_product_by_sku(self, sku: str) -> Optional[Dict[str, Any]]:
        product = self.store.get_product_by_sku(sku)
        return product.to_dict() if product else None

    @operation
    def search_products(self, query: str) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.store.search_products(query)]

    @operation
    def product_categories(self) -> List[str]:
        return self.store.product_categories()

    @operation
    def product_brands(self) -> List[str]:
        return self.store.product_brands()

    @operation
    def create_product(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        product = self.store.create_product(data)
        self._emit("product.created", {"product": product.to_dict()})
        return product.to_dict()

    @operation
    def update_product(self, product_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        product = self.store.get_product(product_id)
        if product is None:
            return None
        previous = product.to_dict()
        self.store.update_product(product_id, updates)
        self._emit("product.updated", {"product": product.to_dict(), "previous": previous})
        return product.to_dict()

    @operation
    def delete_product(self, product_id: str, hard: bool = False) -> bool:
        product = self.store.get_product(product_id)
        if product is None:
            return False
        if hard:
            snapshot = product.to_dict()
            self.store.hard_delete_product(product_id)
        else:
            self.store.delete_product(product_id)
            snapshot = product.to_dict()
        self._emit("product.deleted", {"product": snapshot})
        return True

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    @operation
    def list_customers(self, filters: Optional[CustomerFilters] = None) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self.store.list_customers(filters)]

    @operation
    def get_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        customer = self.store.get_customer(customer_id)
        return customer.to_dict() if customer else None

    @operation
    def get_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        customer = self.store.get_customer_by_email(email)
        return customer.to_dict() if customer else None

    @operation
    def search_customers(self, query: str) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self.store.search_customers(query)]

    @operation
    def customer_tags(self) -> List[str]:
        return self.store.customer_tags()

    @operation
    def customer_sources(self) -> List[str]:
        return self.store.customer_sources()

    @operation
    def create_customer(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        customer = self.store.create_customer(data)
        self._emit("customer.created", {"customer": customer.to_dict()})
        return customer.to_dict()

    @operation
    def update_customer(self, customer_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        customer = self.store.get_customer(customer_id)
        if customer is None:
            return None
        previous = customer.to_dict()
        self.store.update_customer(customer_id, updates)
        self._emit("customer.updated", {"customer": customer.to_dict(), "previous": previous})
        return customer.to_dict()

    @operation
    def delete_customer(self, customer_id: str, hard: bool = False) -> bool:
        customer = self.store.get_customer(customer_id)
        if customer is None:
            return False
        if hard:
            snapshot = customer.to_dict()
            self.store.hard_delete_customer(customer_id)
        else:
            self.store.delete_customer(customer_id)
            snapshot = customer.to_dict()
        self._emit("customer.deleted", {"customer": snapshot})
        return True

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    @operation
    def list_quotes(self, filters: Optional[QuoteFilters] = None) -> List[Dict[str, Any]]:
        return [q.to_dict() for q in self.quotes.list_quotes(filters)]

    @operation
    def get_quote(self, quote_id: str) -> Optional[Dict[str, Any]]:
        quote = self.quotes.get_quote(quote_id)
        return quote.to_dict() if quote else None

    @operation
    def quotes_by_customer(self, customer_id: str) -> Optional[List[Dict[str, Any]]]:
        if self.store.get_customer(customer_id) is None:
            return None
        return [q.to_dict() for q in self.quotes.quotes_by_customer(customer_id)]

    @operation
    def create_quote(self, customer_id: str, line_items: Sequence[Mapping[str, Any]], **options: Any) -> Dict[str, Any]:
        quote = self.quotes.create_quote(customer_id, line_items, **options)
        self._emit("quote.created", {"quote": quote.to_dict()})
        return quote.to_dict()

    @operation
    def update_quote(self, quote_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        quote = self.quotes.get_quote(quote_id)
        if quote is None:
            return None
        previous = quote.to_dict()
        self.quotes.update_quote(quote_id, updates)
        self._emit_quote_change(quote, previous)
        return quote.to_dict()

    @operation
    def update_quote_status(self, quote_id: str, status: str) -> Optional[Dict[str, Any]]:
        quote = self.quotes.get_quote(quote_id)
        if quote is None:
            return None
        previous = quote.to_dict()
        self.quotes.update_quote_status(quote_id, status)
        self._emit_quote_change(quote, previous)
        return quote.to_dict()

    def _emit_quote_change(self, quote, previous: Dict[str, Any]) -> None:
        data = {"quote": quote.to_dict(), "previous": previous}
        self._emit("quote.updated", data)
        if quote.status != previous["status"]:
            self._emit("quote.status_changed", data)

    @operation
    def delete_quote(self, quote_id: str) -> bool:
        quote = self.quotes.get_quote(quote_id)
        if quote is None:
            return False
        snapshot = quote.to_dict()
        self.quotes.delete_quote(quote_id)
        self._emit("quote.deleted", {"quote": snapshot})
        return True

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    @operation
    def list_webhooks(self) -> List[Dict[str, Any]]:
        return [w.to_dict() for w in self.store.list_webhooks()]

    @operation
    def get_webhook(self, webhook_id: str) -> Optional[Dict[str, Any]]:
        webhook = self.store.get_webhook(webhook_id)
        return webhook.to_dict() if webhook else None

    @operation
    def create_webhook(
        self,
        name: str,
        url: str,
        events: List[str],
        secret: Optional[str] = None,
        project_id: Optional[str] = None,
        enabled: bool = True,
    ) -> Dict[str, Any]:
        webhook = self.store.create_webhook(name, url, events, secret=secret, project_id=project_id, enabled=enabled)
        return webhook.to_dict()

    @operation
    def update_webhook(self, webhook_id: str, updates: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        webhook = self.store.update_webhook(webhook_id, updates)
        return webhook.to_dict() if webhook else None

    @operation
    def delete_webhook(self, webhook_id: str) -> bool:
        return self.store.delete_webhook(webhook_id)

    def test_webhook(self, webhook_id: str) -> Optional[Dict[str, Any]]:
        """Send a test payload. Not an ``operation``: the request must not hold the data lock."""
        payload = self.dispatcher.send_test(webhook_id)
        if payload is None:
            return None
        with self.store.session():
            deliveries = self.store.list_webhook_deliveries(webhook_id, limit=1)
        return {
            "payload": payload.to_dict(),
            "delivery": deliveries[0].to_dict() if deliveries else None,
        }

    @operation
    def list_webhook_deliveries(self, webhook_id: str, limit: int = 50) -> Optional[List[Dict[str, Any]]]:
        if self.store.get_webhook(webhook_id) is None:
            return None
        return [d.to_dict() for d in self.store.list_webhook_deliveries(webhook_id, limit)]

    @operation
    def cleanup_old_deliveries(self, max_age_days: Optional[float] = None) -> int:
        days = self.delivery_retention_days if max_age_days is None else max_age_days
        return self.store.cleanup_old_deliveries(timedelta(days=days))


def build_manager(settings: Optional[FluxSettings] = None, *, adapter: Optional[StorageAdapter] = None) -> WorkflowManager:
    """Assemble a manager from settings. An explicit adapter overrides the configured storage."""
    settings = settings or FluxSettings.from_env()
    if adapter is None:
        if settings.storage == "memory":
            adapter = MemoryAdapter()
        else:
            adapter = JsonFileAdapter(settings.data_path, lock_timeout=settings.lock_timeout)

    store = FluxStore(adapter)
    store.init()

    dispatcher = WebhookDispatcher(store)
    if settings.webhooks_enabled:
        dispatcher.set_handler(HttpDeliveryHandler(store, timeout=settings.webhook_timeout))

    quotes = QuoteEngine(
        store,
        default_tax_rate=settings.default_tax_rate,
        default_valid_days=settings.quote_valid_days,
    )
    logger.info(f"Flux manager ready ({type(adapter).__name__})")
    return WorkflowManager(
        store,
        dispatcher=dispatcher,
        quotes=quotes,
        delivery_retention_days=settings.delivery_retention_days,
    )
