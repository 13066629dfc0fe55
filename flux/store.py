"""Entity store for Flux.

``FluxStore`` is the single in-memory source of truth for one context. It
owns a storage adapter and mirrors every mutation to it through a unit of
work: the collections a mutation touches are snapshotted when the outermost
transaction opens, the document is persisted once when it closes, and the
snapshot is restored if the body or the write raises.

Every mutator runs inside a session. A session holds the adapter's
cross-process lock from the reload that picks up other writers' changes
through the final write, so processes sharing one data file never
overwrite each other.

Lookups that miss return ``None`` (or ``False`` for deletes); they are not
errors. Bad input raises :class:`~flux.errors.ValidationError`, duplicate
SKUs and emails raise :class:`~flux.errors.ConflictError`, and adapter
failures propagate unchanged.
"""

from __future__ import annotations

import functools
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional

from .adapters import StorageAdapter
from .errors import ConflictError, InvalidTransitionError, ValidationError
from .flux_logging import log_operation
from .models import (
    AGENTS,
    COLLECTION_TYPES,
    CUSTOMER_TYPES,
    DEFAULT_CURRENCY,
    DELIVERY_STATUSES,
    TASK_STATUSES,
    WEBHOOK_EVENT_TYPES,
    Address,
    Customer,
    CustomerFilters,
    Epic,
    Product,
    ProductFilters,
    Project,
    StoreData,
    Task,
    TaskFilters,
    Webhook,
    WebhookDelivery,
    can_transition,
    customer_matches_query,
    format_timestamp,
    generate_id,
    parse_timestamp,
    product_matches_query,
    updatable_fields,
)

logger = logging.getLogger("flux.store")


# ------------------------------------------------------------------
# Input validation helpers
# ------------------------------------------------------------------


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{field_name}' is required")
    return value.strip()


def _optional_text(value: Any, field_name: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"'{field_name}' must be a string")
    return value


def _check_choice(value: Any, choices: Iterable[str], field_name: str) -> str:
    choices = tuple(choices)
    if value not in choices:
        raise ValidationError(f"Invalid {field_name} '{value}'. Expected one of: {', '.join(choices)}")
    return value


def _to_amount(value: Any, field_name: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"'{field_name}' must be a number")
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{field_name}' must be a number") from None
    if amount < 0:
        raise ValidationError(f"'{field_name}' must not be negative")
    return amount


def _to_bool(value: Any, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"'{field_name}' must be true or false")
    return value


def _to_string_list(value: Any, field_name: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"'{field_name}' must be a list of strings")
    return list(value)


def _to_address(value: Any) -> Optional[Address]:
    if value is None or isinstance(value, Address):
        return value
    if isinstance(value, Mapping):
        unknown = set(value) - {"street", "city", "state", "postcode", "country"}
        if unknown:
            raise ValidationError(f"Unknown address field(s): {', '.join(sorted(unknown))}")
        return Address.from_dict(dict(value))
    raise ValidationError("'address' must be an object")


def _check_events(events: Any) -> List[str]:
    events = _to_string_list(events, "events")
    unknown = [event for event in events if event not in WEBHOOK_EVENT_TYPES]
    if unknown:
        raise ValidationError(f"Unknown webhook event(s): {', '.join(unknown)}")
    return list(dict.fromkeys(events))


def _check_url(value: Any) -> str:
    url = _require_text(value, "url")
    if not url.startswith(("http://", "https://")):
        raise ValidationError(f"Webhook url must be http(s): {url}")
    return url


def _check_updates(record_type, updates: Mapping[str, Any]) -> None:
    allowed = updatable_fields(record_type)
    unknown = sorted(set(updates) - allowed)
    if unknown:
        raise ValidationError(
            f"Cannot update {record_type.__name__.lower()} field(s): {', '.join(unknown)}"
        )


def synchronized(method):
    """Run a method of an object holding ``self.store`` (or a store itself) inside one store session."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        store = self if isinstance(self, FluxStore) else self.store
        with store.session():
            return method(self, *args, **kwargs)
    return wrapper


class FluxStore:
    """CRUD, filtering and search over every Flux collection."""

    def __init__(
        self,
        adapter: StorageAdapter,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.adapter = adapter
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._id_factory = id_factory or generate_id
        self._lock = threading.RLock()
        self._sessions = 0
        self._snapshot: Optional[Dict[str, Any]] = None
        self._depth = 0
        self._changed = False

    @property
    def data(self) -> StoreData:
        return self.adapter.data

    def init(self) -> StoreData:
        """Hydrate from the adapter, upgrading legacy documents."""
        self.adapter.read()
        logger.info(
            f"Store loaded: {len(self.data.projects)} projects, "
            f"{len(self.data.tasks)} tasks, {len(self.data.quotes)} quotes"
        )
        return self.data

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    @contextmanager
    def session(self) -> Iterator[StoreData]:
        """Hold the store for one operation.

        The outermost session takes the store lock and the adapter's
        cross-process lock, then reloads anything another process wrote.
        Entities looked up inside a session stay valid until it closes;
        nested sessions join the outer one without reloading.
        """
        with self._lock:
            if self._sessions:
                self._sessions += 1
                try:
                    yield self.data
                finally:
                    self._sessions -= 1
                return

            with self.adapter.exclusive():
                self.adapter.refresh()
                self._sessions = 1
                try:
                    yield self.data
                finally:
                    self._sessions = 0

    @contextmanager
    def transaction(self, name: str, *collections: str) -> Iterator[StoreData]:
        """Run a mutation as one unit of work. Nested calls join the outer one.

        ``collections`` names what the body may change; only those are
        snapshotted for rollback. Without names every collection is.
        """
        wanted = collections or None
        with self.session():
            if self._depth:
                if self._snapshot is not None:
                    missing = (
                        [c for c in COLLECTION_TYPES if c not in self._snapshot]
                        if wanted is None
                        else [c for c in wanted if c not in self._snapshot]
                    )
                    if missing:
                        extra = self.data.snapshot(missing)
                        del extra["counters"]
                        self._snapshot.update(extra)
                self._depth += 1
                try:
                    yield self.data
                finally:
                    self._depth -= 1
                return

            self._snapshot = self.data.snapshot(wanted)
            self._depth = 1
            self._changed = False
            try:
                with log_operation(name):
                    yield self.data
                    if self._changed:
                        self.adapter.write()
            except BaseException:
                self.data.restore(self._snapshot)
                raise
            finally:
                self._snapshot = None
                self._depth = 0
                self._changed = False

    def mark_changed(self) -> None:
        """Flag the open transaction as needing a write."""
        self._changed = True

    def now(self) -> str:
        return format_timestamp(self.clock())

    def new_id(self) -> str:
        """Return a fresh identifier not used by any stored entity."""
        existing = self.data.all_ids()
        while True:
            candidate = self._id_factory()
            if candidate not in existing:
                return candidate

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def list_projects(self) -> List[Project]:
        return list(self.data.projects)

    def get_project(self, project_id: str) -> Optional[Project]:
        return next((p for p in self.data.projects if p.id == project_id), None)

    @synchronized
    def create_project(self, name: str, description: Optional[str] = None) -> Project:
        project = Project(
            id=self.new_id(),
            name=_require_text(name, "name"),
            description=_optional_text(description, "description"),
        )
        with self.transaction("create_project", "projects"):
            self.data.projects.append(project)
            self.mark_changed()
        logger.info(f"Created project {project.id}: {project.name}")
        return project

    @synchronized
    def update_project(self, project_id: str, updates: Mapping[str, Any]) -> Optional[Project]:
        project = self.get_project(project_id)
        if project is None:
            return None
        _check_updates(Project, updates)
        values = dict(updates)
        if "name" in values:
            values["name"] = _require_text(values["name"], "name")
        if "description" in values:
            values["description"] = _optional_text(values["description"], "description") or None
        with self.transaction("update_project", "projects"):
            for key, value in values.items():
                setattr(project, key, value)
            self.mark_changed()
        return project

    @synchronized
    def delete_project(self, project_id: str) -> bool:
        """Delete a project together with all of its epics and tasks."""
        project = self.get_project(project_id)
        if project is None:
            return False
        with self.transaction("delete_project", "projects", "epics", "tasks"):
            data = self.data
            data.projects = [p for p in data.projects if p.id != project_id]
            data.epics = [e for e in data.epics if e.project_id != project_id]
            data.tasks = [t for t in data.tasks if t.project_id != project_id]
            self.mark_changed()
        logger.info(f"Deleted project {project_id} and its epics and tasks")
        return True

    def project_stats(self, project_id: str) -> Dict[str, int]:
        tasks = [t for t in self.data.tasks if t.project_id == project_id and not t.archived]
        return {"total": len(tasks), "done": sum(1 for t in tasks if t.is_done())}

    # ------------------------------------------------------------------
    # Epics
    # ------------------------------------------------------------------

    def list_epics(self, project_id: str) -> List[Epic]:
        return [e for e in self.data.epics if e.project_id == project_id]

    def list_all_epics(self) -> List[Epic]:
        return list(self.data.epics)

    def get_epic(self, epic_id: str) -> Optional[Epic]:
        return next((e for e in self.data.epics if e.id == epic_id), None)

    @synchronized
    def create_epic(self, project_id: str, title: str, notes: str = "") -> Epic:
        if self.get_project(project_id) is None:
            raise ValidationError(f"Project '{project_id}' not found")
        epic = Epic(
            id=self.new_id(),
            title=_require_text(title, "title"),
            project_id=project_id,
            notes=notes or "",
        )
        with self.transaction("create_epic", "epics"):
            self.data.epics.append(epic)
            self.mark_changed()
        return epic

    @synchronized
    def update_epic(self, epic_id: str, updates: Mapping[str, Any]) -> Optional[Epic]:
        epic = self.get_epic(epic_id)
        if epic is None:
            return None
        _check_updates(Epic, updates)
        values = dict(updates)
        if "title" in values:
            values["title"] = _require_text(values["title"], "title")
        if "status" in values:
            _check_choice(values["status"], TASK_STATUSES, "status")
        if "depends_on" in values:
            values["depends_on"] = _to_string_list(values["depends_on"], "depends_on")
            if epic_id in values["depends_on"]:
                raise ValidationError("An epic cannot depend on itself")
        if "notes" in values:
            values["notes"] = values["notes"] or ""
        with self.transaction("update_epic", "epics"):
            for key, value in values.items():
                setattr(epic, key, value)
            self.mark_changed()
        return epic

    @synchronized
    def delete_epic(self, epic_id: str) -> bool:
        """Delete an epic; its tasks stay and lose their ``epic_id``."""
        if self.get_epic(epic_id) is None:
            return False
        with self.transaction("delete_epic", "epics", "tasks"):
            self.data.epics = [e for e in self.data.epics if e.id != epic_id]
            for task in self.data.tasks:
                if task.epic_id == epic_id:
                    task.epic_id = None
            self.mark_changed()
        return True

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def list_tasks(self, project_id: str, filters: Optional[TaskFilters] = None) -> List[Task]:
        filters = filters or TaskFilters()
        return [t for t in self.data.tasks if t.project_id == project_id and filters.matches(t)]

    def list_all_tasks(self) -> List[Task]:
        return list(self.data.tasks)

    def get_task(self, task_id: str) -> Optional[Task]:
        return next((t for t in self.data.tasks if t.id == task_id), None)

    def tasks_by_epic(self, project_id: str, epic_id: Optional[str]) -> List[Task]:
        return [t for t in self.data.tasks if t.project_id == project_id and t.epic_id == epic_id]

    def tasks_by_status(self, project_id: str, status: str) -> List[Task]:
        return [t for t in self.data.tasks if t.project_id == project_id and t.status == status]

    @synchronized
    def create_task(
        self,
        project_id: str,
        title: str,
        epic_id: Optional[str] = None,
        notes: str = "",
        agent: Optional[str] = None,
        depends_on: Optional[List[str]] = None,
    ) -> Task:
        if self.get_project(project_id) is None:
            raise ValidationError(f"Project '{project_id}' not found")
        if agent is not None:
            _check_choice(agent, AGENTS, "agent")
        task = Task(
            id=self.new_id(),
            title=_require_text(title, "title"),
            project_id=project_id,
            notes=notes or "",
            epic_id=epic_id or None,
            agent=agent,
            depends_on=list(dict.fromkeys(_to_string_list(depends_on, "depends_on"))),
        )
        with self.transaction("create_task", "tasks"):
            self.data.tasks.append(task)
            self.mark_changed()
        return task

    @synchronized
    def update_task(self, task_id: str, updates: Mapping[str, Any]) -> Optional[Task]:
        """Apply a partial update. Status changes go through the transition table."""
        task = self.get_task(task_id)
        if task is None:
            return None
        _check_updates(Task, updates)
        values = dict(updates)
        if "title" in values:
            values["title"] = _require_text(values["title"], "title")
        if "status" in values:
            self._check_status_move(task, values["status"])
        if "agent" in values:
            values["agent"] = values["agent"] or None
            if values["agent"] is not None:
                _check_choice(values["agent"], AGENTS, "agent")
        if "depends_on" in values:
            values["depends_on"] = list(dict.fromkeys(_to_string_list(values["depends_on"], "depends_on")))
            if task_id in values["depends_on"]:
                raise ValidationError("A task cannot depend on itself")
        if "archived" in values:
            values["archived"] = bool(values["archived"])
        if "notes" in values:
            values["notes"] = values["notes"] or ""
        if "epic_id" in values:
            values["epic_id"] = values["epic_id"] or None
        with self.transaction("update_task", "tasks"):
            for key, value in values.items():
                setattr(task, key, value)
            self.mark_changed()
        return task

    @synchronized
    def move_task_status(self, task_id: str, status: str) -> Optional[Task]:
        return self.update_task(task_id, {"status": status})

    def _check_status_move(self, task: Task, status: Any) -> None:
        _check_choice(status, TASK_STATUSES, "status")
        if not can_transition(task.status, status):
            raise InvalidTransitionError(task.status, status)

    @synchronized
    def delete_task(self, task_id: str) -> bool:
        """Delete a task and prune it from every other task's ``depends_on``."""
        if self.get_task(task_id) is None:
            return False
        with self.transaction("delete_task", "tasks"):
            self.data.tasks = [t for t in self.data.tasks if t.id != task_id]
            for task in self.data.tasks:
                if task_id in task.depends_on:
                    task.depends_on = [dep for dep in task.depends_on if dep != task_id]
            self.mark_changed()
        return True

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def list_products(self, filters: Optional[ProductFilters] = None) -> List[Product]:
        filters = filters or ProductFilters()
        return [p for p in self.data.products if filters.matches(p)]

    def get_product(self, product_id: str) -> Optional[Product]:
        return next((p for p in self.data.products if p.id == product_id), None)

    def get_product_by_sku(self, sku: str) -> Optional[Product]:
        needle = sku.lower()
        return next((p for p in self.data.products if p.sku.lower() == needle), None)

    @synchronized
    def create_product(self, data: Mapping[str, Any]) -> Product:
        _check_updates(Product, data)
        now = self.now()
        product = Product(
            id=self.new_id(),
            sku=_require_text(data.get("sku"), "sku"),
            name=_require_text(data.get("name"), "name"),
            category=_require_text(data.get("category"), "category"),
            sell_price=_to_amount(data.get("sell_price"), "sell_price"),
            subcategory=data.get("subcategory") or "",
            brand=data.get("brand") or "",
            cost_price=_to_amount(data.get("cost_price") or 0, "cost_price"),
            currency=data.get("currency") or DEFAULT_CURRENCY,
            description=data.get("description") or "",
            fitment=_to_string_list(data.get("fitment"), "fitment"),
            is_active=_to_bool(data.get("is_active", True), "is_active"),
            created_at=now,
            updated_at=now,
        )
        with self.transaction("create_product", "products"):
            self._check_sku_free(product.sku)
            self.data.products.append(product)
            self.mark_changed()
        logger.info(f"Created product {product.id} ({product.sku})")
        return product

    @synchronized
    def update_product(self, product_id: str, updates: Mapping[str, Any]) -> Optional[Product]:
        product = self.get_product(product_id)
        if product is None:
            return None
        _check_updates(Product, updates)
        values = dict(updates)
        for key in ("sku", "name", "category"):
            if key in values:
                values[key] = _require_text(values[key], key)
        for key in ("sell_price", "cost_price"):
            if key in values:
                values[key] = _to_amount(values[key], key)
        for key in ("subcategory", "brand", "description"):
            if key in values:
                values[key] = values[key] or ""
        if "currency" in values:
            values["currency"] = values["currency"] or DEFAULT_CURRENCY
        if "fitment" in values:
            values["fitment"] = _to_string_list(values["fitment"], "fitment")
        if "is_active" in values:
            values["is_active"] = _to_bool(values["is_active"], "is_active")
        with self.transaction("update_product", "products"):
            if "sku" in values:
                self._check_sku_free(values["sku"], exclude_id=product_id)
            for key, value in values.items():
                setattr(product, key, value)
            product.updated_at = self.now()
            self.mark_changed()
        return product

    def _check_sku_free(self, sku: str, exclude_id: Optional[str] = None) -> None:
        existing = self.get_product_by_sku(sku)
        if existing is not None and existing.id != exclude_id:
            raise ConflictError(f"Product with SKU '{sku}' already exists")

    @synchronized
    def delete_product(self, product_id: str) -> bool:
        """Soft delete: the product stays retrievable with ``is_active`` false."""
        product = self.get_product(product_id)
        if product is None:
            return False
        with self.transaction("delete_product", "products"):
            product.is_active = False
            product.updated_at = self.now()
            self.mark_changed()
        return True

    @synchronized
    def hard_delete_product(self, product_id: str) -> bool:
        if self.get_product(product_id) is None:
            return False
        with self.transaction("hard_delete_product", "products"):
            self.data.products = [p for p in self.data.products if p.id != product_id]
            self.mark_changed()
        logger.warning(f"Purged product {product_id}")
        return True

    def product_categories(self) -> List[str]:
        return sorted({p.category for p in self.data.products if p.category})

    def product_brands(self) -> List[str]:
        return sorted({p.brand for p in self.data.products if p.brand})

    def search_products(self, query: str) -> List[Product]:
        return [p for p in self.data.products if product_matches_query(p, query)]

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def list_customers(self, filters: Optional[CustomerFilters] = None) -> List[Customer]:
        filters = filters or CustomerFilters()
        return [c for c in self.data.customers if filters.matches(c)]

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        return next((c for c in self.data.customers if c.id == customer_id), None)

    def get_customer_by_email(self, email: str) -> Optional[Customer]:
        needle = email.lower()
        return next((c for c in self.data.customers if c.email and c.email.lower() == needle), None)

    @synchronized
    def create_customer(self, data: Mapping[str, Any]) -> Customer:
        _check_updates(Customer, data)
        now = self.now()
        customer = Customer(
            id=self.new_id(),
            type=_check_choice(data.get("type"), CUSTOMER_TYPES, "customer type"),
            name=_require_text(data.get("name"), "name"),
            contact_name=_optional_text(data.get("contact_name"), "contact_name"),
            email=_optional_text(data.get("email"), "email") or None,
            phone=_optional_text(data.get("phone"), "phone"),
            mobile=_optional_text(data.get("mobile"), "mobile"),
            address=_to_address(data.get("address")),
            abn=_optional_text(data.get("abn"), "abn"),
            tags=_to_string_list(data.get("tags"), "tags"),
            source=_optional_text(data.get("source"), "source"),
            notes=_optional_text(data.get("notes"), "notes"),
            is_active=_to_bool(data.get("is_active", True), "is_active"),
            created_at=now,
            updated_at=now,
        )
        with self.transaction("create_customer", "customers"):
            if customer.email:
                self._check_email_free(customer.email)
            self.data.customers.append(customer)
            self.mark_changed()
        logger.info(f"Created customer {customer.id}: {customer.name}")
        return customer

    @synchronized
    def update_customer(self, customer_id: str, updates: Mapping[str, Any]) -> Optional[Customer]:
        customer = self.get_customer(customer_id)
        if customer is None:
            return None
        _check_updates(Customer, updates)
        values = dict(updates)
        if "type" in values:
            _check_choice(values["type"], CUSTOMER_TYPES, "customer type")
        if "name" in values:
            values["name"] = _require_text(values["name"], "name")
        for key in ("contact_name", "email", "phone", "mobile", "abn", "source", "notes"):
            if key in values:
                values[key] = _optional_text(values[key], key)
        if "email" in values:
            values["email"] = values["email"] or None
        if "address" in values:
            values["address"] = _to_address(values["address"])
        if "tags" in values:
            values["tags"] = _to_string_list(values["tags"], "tags")
        if "is_active" in values:
            values["is_active"] = _to_bool(values["is_active"], "is_active")
        with self.transaction("update_customer", "customers"):
            if values.get("email"):
                self._check_email_free(values["email"], exclude_id=customer_id)
            for key, value in values.items():
                setattr(customer, key, value)
            customer.updated_at = self.now()
            self.mark_changed()
        return customer

    def _check_email_free(self, email: str, exclude_id: Optional[str] = None) -> None:
        existing = self.get_customer_by_email(email)
        if existing is not None and existing.id != exclude_id:
            raise ConflictError(f"Customer with email '{email}' already exists")

    @synchronized
    def delete_customer(self, customer_id: str) -> bool:
        """Soft delete: the customer stays retrievable with ``is_active`` false."""
        customer = self.get_customer(customer_id)
        if customer is None:
            return False
        with self.transaction("delete_customer", "customers"):
            customer.is_active = False
            customer.updated_at = self.now()
            self.mark_changed()
        return True

    @synchronized
    def hard_delete_customer(self, customer_id: str) -> bool:
        if self.get_customer(customer_id) is None:
            return False
        with self.transaction("hard_delete_customer", "customers"):
            self.data.customers = [c for c in self.data.customers if c.id != customer_id]
            self.mark_changed()
        logger.warning(f"Purged customer {customer_id}")
        return True

    def customer_tags(self) -> List[str]:
        return sorted({tag for c in self.data.customers for tag in c.tags if tag})

    def customer_sources(self) -> List[str]:
        return sorted({c.source for c in self.data.customers if c.source})

    def search_customers(self, query: str) -> List[Customer]:
        return [c for c in self.data.customers if customer_matches_query(c, query)]

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def list_webhooks(self) -> List[Webhook]:
        return list(self.data.webhooks)

    def get_webhook(self, webhook_id: str) -> Optional[Webhook]:
        return next((w for w in self.data.webhooks if w.id == webhook_id), None)

    def webhooks_for_project(self, project_id: str) -> List[Webhook]:
        """Webhooks scoped to ``project_id`` plus the unscoped ones."""
        return [w for w in self.data.webhooks if not w.project_id or w.project_id == project_id]

    @synchronized
    def create_webhook(
        self,
        name: str,
        url: str,
        events: List[str],
        secret: Optional[str] = None,
        project_id: Optional[str] = None,
        enabled: bool = True,
    ) -> Webhook:
        now = self.now()
        webhook = Webhook(
            id=self.new_id(),
            name=_require_text(name, "name"),
            url=_check_url(url),
            events=_check_events(events),
            enabled=_to_bool(enabled, "enabled"),
            secret=secret or None,
            project_id=project_id or None,
            created_at=now,
            updated_at=now,
        )
        with self.transaction("create_webhook", "webhooks"):
            self.data.webhooks.append(webhook)
            self.mark_changed()
        logger.info(f"Created webhook {webhook.id} -> {webhook.url} for {len(webhook.events)} event(s)")
        return webhook

    @synchronized
    def update_webhook(self, webhook_id: str, updates: Mapping[str, Any]) -> Optional[Webhook]:
        webhook = self.get_webhook(webhook_id)
        if webhook is None:
            return None
        _check_updates(Webhook, updates)
        values = dict(updates)
        if "name" in values:
            values["name"] = _require_text(values["name"], "name")
        if "url" in values:
            values["url"] = _check_url(values["url"])
        if "events" in values:
            values["events"] = _check_events(values["events"])
        if "enabled" in values:
            values["enabled"] = _to_bool(values["enabled"], "enabled")
        for key in ("secret", "project_id"):
            if key in values:
                values[key] = values[key] or None
        with self.transaction("update_webhook", "webhooks"):
            for key, value in values.items():
                setattr(webhook, key, value)
            webhook.updated_at = self.now()
            self.mark_changed()
        return webhook

    @synchronized
    def delete_webhook(self, webhook_id: str) -> bool:
        """Delete a webhook and its delivery history."""
        if self.get_webhook(webhook_id) is None:
            return False
        with self.transaction("delete_webhook", "webhooks", "webhook_deliveries"):
            self.data.webhooks = [w for w in self.data.webhooks if w.id != webhook_id]
            self.data.webhook_deliveries = [
                d for d in self.data.webhook_deliveries if d.webhook_id != webhook_id
            ]
            self.mark_changed()
        return True

    # ------------------------------------------------------------------
    # Webhook deliveries
    # ------------------------------------------------------------------

    def get_webhook_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        return next((d for d in self.data.webhook_deliveries if d.id == delivery_id), None)

    def list_webhook_deliveries(self, webhook_id: Optional[str] = None, limit: int = 50) -> List[WebhookDelivery]:
        """Deliveries, most recent first."""
        ranked = [
            (parse_timestamp(d.created_at), index, d)
            for index, d in enumerate(self.data.webhook_deliveries)
            if webhook_id is None or d.webhook_id == webhook_id
        ]
        # Later records win ties on created_at.
        ranked.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [d for _, _, d in ranked[: max(limit, 0)]]

    @synchronized
    def create_webhook_delivery(self, webhook_id: str, event: str, payload: Dict[str, Any]) -> WebhookDelivery:
        delivery = WebhookDelivery(
            id=self.new_id(),
            webhook_id=webhook_id,
            event=event,
            payload=payload,
            created_at=self.now(),
        )
        with self.transaction("create_webhook_delivery", "webhook_deliveries"):
            self.data.webhook_deliveries.append(delivery)
            self.mark_changed()
        return delivery

    @synchronized
    def update_webhook_delivery(self, delivery_id: str, updates: Mapping[str, Any]) -> Optional[WebhookDelivery]:
        delivery = self.get_webhook_delivery(delivery_id)
        if delivery is None:
            return None
        _check_updates(WebhookDelivery, updates)
        if "status" in updates:
            _check_choice(updates["status"], DELIVERY_STATUSES, "delivery status")
        with self.transaction("update_webhook_delivery", "webhook_deliveries"):
            for key, value in updates.items():
                setattr(delivery, key, value)
            self.mark_changed()
        return delivery

    @synchronized
    def cleanup_old_deliveries(self, max_age: timedelta = timedelta(days=7)) -> int:
        """Drop delivery records created before ``now - max_age``; return how many went."""
        cutoff = self.clock() - max_age
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)
        keep = [d for d in self.data.webhook_deliveries if parse_timestamp(d.created_at) > cutoff]
        removed = len(self.data.webhook_deliveries) - len(keep)
        if removed:
            with self.transaction("cleanup_old_deliveries", "webhook_deliveries"):
                self.data.webhook_deliveries = keep
                self.mark_changed()
            logger.info(f"Removed {removed} webhook deliveries older than {max_age}")
        return removed
