"""Data models for Flux.

This module contains the entity records stored by Flux (projects, epics,
tasks, products, customers, quotes, webhooks and delivery records), the
status and event vocabularies, the filter types used by list operations and
the ``StoreData`` document root that storage adapters persist.

Project, epic, task and webhook records serialise with snake_case keys;
product, customer and quote records use the camelCase keys of the stored
document format.
"""

from __future__ import annotations

import copy
import secrets
import string
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

# ------------------------------------------------------------------
# Vocabularies
# ------------------------------------------------------------------

TASK_STATUSES = ("planning", "todo", "in_progress", "done")

STATUS_LABELS = {
    "planning": "Planning",
    "todo": "To Do",
    "in_progress": "In Progress",
    "done": "Done",
}

# Allowed task moves keyed by current status. Starting work on a task that
# is still being planned requires passing through "todo".
TASK_STATUS_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "planning": frozenset({"planning", "todo", "done"}),
    "todo": frozenset(TASK_STATUSES),
    "in_progress": frozenset(TASK_STATUSES),
    "done": frozenset(TASK_STATUSES),
}

AGENTS = ("claude", "codex", "gemini", "other")

CUSTOMER_TYPES = ("individual", "business")

QUOTE_STATUSES = ("draft", "sent", "accepted", "rejected", "expired")

DELIVERY_STATUSES = ("pending", "success", "failed")

WEBHOOK_EVENT_TYPES = (
    "project.created",
    "project.updated",
    "project.deleted",
    "epic.created",
    "epic.updated",
    "epic.deleted",
    "task.created",
    "task.updated",
    "task.deleted",
    "task.status_changed",
    "task.archived",
    "product.created",
    "product.updated",
    "product.deleted",
    "customer.created",
    "customer.updated",
    "customer.deleted",
    "quote.created",
    "quote.updated",
    "quote.deleted",
    "quote.status_changed",
)

DEFAULT_CURRENCY = "AUD"

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_id(length: int = 7) -> str:
    """Generate a short random identifier."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def can_transition(current: str, requested: str) -> bool:
    """Check the task status transition table."""
    return requested in TASK_STATUS_TRANSITIONS.get(current, frozenset(TASK_STATUSES))


def updatable_fields(cls) -> FrozenSet[str]:
    """Field names a partial update may touch for the given record type."""
    return frozenset(f.name for f in fields(cls)) - frozenset(getattr(cls, "IMMUTABLE_FIELDS", ()))


# ------------------------------------------------------------------
# Board records
# ------------------------------------------------------------------


@dataclass(slots=True)
class Project:
    """Root aggregate owning epics and tasks."""

    id: str
    name: str
    description: Optional[str] = None

    IMMUTABLE_FIELDS = ("id",)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "description": self.description}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        return cls(id=data["id"], name=data.get("name", ""), description=data.get("description"))


@dataclass(slots=True)
class Epic:
    """A grouping of related tasks within a project."""

    id: str
    title: str
    project_id: str
    status: str = "planning"
    depends_on: List[str] = field(default_factory=list)
    notes: str = ""

    IMMUTABLE_FIELDS = ("id", "project_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "depends_on": list(self.depends_on),
            "notes": self.notes,
            "project_id": self.project_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Epic":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            project_id=data.get("project_id", ""),
            status=data.get("status", "planning"),
            depends_on=list(data.get("depends_on") or []),
            notes=data.get("notes") or "",
        )


@dataclass(slots=True)
class Task:
    """A single work item on a project board."""

    id: str
    title: str
    project_id: str
    status: str = "planning"
    depends_on: List[str] = field(default_factory=list)
    notes: str = ""
    epic_id: Optional[str] = None
    agent: Optional[str] = None
    archived: bool = False

    IMMUTABLE_FIELDS = ("id", "project_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "depends_on": list(self.depends_on),
            "notes": self.notes,
            "epic_id": self.epic_id,
            "project_id": self.project_id,
            "agent": self.agent,
            "archived": self.archived,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            project_id=data.get("project_id", ""),
            status=data.get("status", "planning"),
            depends_on=list(data.get("depends_on") or []),
            notes=data.get("notes") or "",
            epic_id=data.get("epic_id") or None,
            agent=data.get("agent") or None,
            archived=bool(data.get("archived", False)),
        )

    def is_done(self) -> bool:
        return self.status == "done"


# ------------------------------------------------------------------
# Catalog and CRM records
# ------------------------------------------------------------------


@dataclass(slots=True)
class Product:
    """A catalog entry. Prices are in ``currency`` units."""

    id: str
    sku: str
    name: str
    category: str
    sell_price: float
    subcategory: str = ""
    brand: str = ""
    cost_price: float = 0.0
    currency: str = DEFAULT_CURRENCY
    description: str = ""
    fitment: List[str] = field(default_factory=list)
    is_active: bool = True
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    IMMUTABLE_FIELDS = ("id", "created_at", "updated_at")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "category": self.category,
            "subcategory": self.subcategory,
            "brand": self.brand,
            "costPrice": self.cost_price,
            "sellPrice": self.sell_price,
            "currency": self.currency,
            "description": self.description,
            "fitment": list(self.fitment),
            "isActive": self.is_active,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Product":
        now = utc_now()
        return cls(
            id=data["id"],
            sku=data.get("sku", ""),
            name=data.get("name", ""),
            category=data.get("category", ""),
            sell_price=float(data.get("sellPrice", 0)),
            subcategory=data.get("subcategory") or "",
            brand=data.get("brand") or "",
            cost_price=float(data.get("costPrice") or 0),
            currency=data.get("currency") or DEFAULT_CURRENCY,
            description=data.get("description") or "",
            fitment=list(data.get("fitment") or []),
            is_active=bool(data.get("isActive", True)),
            created_at=data.get("createdAt", now),
            updated_at=data.get("updatedAt", now),
        )


@dataclass(slots=True)
class Address:
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "postcode": self.postcode,
            "country": self.country,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Address":
        return cls(
            street=data.get("street"),
            city=data.get("city"),
            state=data.get("state"),
            postcode=data.get("postcode"),
            country=data.get("country"),
        )


@dataclass(slots=True)
class Customer:
    """A contact in the customer registry."""

    id: str
    type: str
    name: str
    contact_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    mobile: Optional[str] = None
    address: Optional[Address] = None
    abn: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    source: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    IMMUTABLE_FIELDS = ("id", "created_at", "updated_at")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "contactName": self.contact_name,
            "email": self.email,
            "phone": self.phone,
            "mobile": self.mobile,
            "address": self.address.to_dict() if self.address else None,
            "abn": self.abn,
            "tags": list(self.tags),
            "source": self.source,
            "notes": self.notes,
            "isActive": self.is_active,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Customer":
        now = utc_now()
        address = data.get("address")
        return cls(
            id=data["id"],
            type=data.get("type", "individual"),
            name=data.get("name", ""),
            contact_name=data.get("contactName"),
            email=data.get("email"),
            phone=data.get("phone"),
            mobile=data.get("mobile"),
            address=Address.from_dict(address) if isinstance(address, dict) else None,
            abn=data.get("abn"),
            tags=list(data.get("tags") or []),
            source=data.get("source"),
            notes=data.get("notes"),
            is_active=bool(data.get("isActive", True)),
            created_at=data.get("createdAt", now),
            updated_at=data.get("updatedAt", now),
        )


# ------------------------------------------------------------------
# Quotes
# ------------------------------------------------------------------


@dataclass(slots=True)
class QuoteLineItem:
    """A priced line on a quote.

    ``product_sku`` and ``product_name`` are copied from the product when the
    line is priced and are not refreshed by later product edits.
    """

    id: str
    product_id: str
    product_sku: str
    product_name: str
    quantity: float
    unit_price: float
    discount: float
    line_total: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "productId": self.product_id,
            "productSku": self.product_sku,
            "productName": self.product_name,
            "quantity": self.quantity,
            "unitPrice": self.unit_price,
            "discount": self.discount,
            "lineTotal": self.line_total,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuoteLineItem":
        return cls(
            id=data["id"],
            product_id=data.get("productId", ""),
            product_sku=data.get("productSku", ""),
            product_name=data.get("productName", ""),
            quantity=data.get("quantity", 0),
            unit_price=float(data.get("unitPrice", 0)),
            discount=float(data.get("discount", 0)),
            line_total=float(data.get("lineTotal", 0)),
        )


@dataclass(slots=True)
class Quote:
    """A point-in-time pricing snapshot for a customer.

    ``customer_name`` and the product fields on each line item are display
    copies taken when the quote was priced. Consumers must not expect them to
    follow later renames of the customer or products.
    """

    id: str
    quote_number: str
    customer_id: str
    customer_name: str
    line_items: List[QuoteLineItem]
    subtotal: float
    tax_rate: float
    tax_amount: float
    total: float
    status: str
    issue_date: str
    valid_until: str
    notes: Optional[str] = None
    terms: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "quoteNumber": self.quote_number,
            "customerId": self.customer_id,
            "customerName": self.customer_name,
            "lineItems": [item.to_dict() for item in self.line_items],
            "subtotal": self.subtotal,
            "taxRate": self.tax_rate,
            "taxAmount": self.tax_amount,
            "total": self.total,
            "status": self.status,
            "issueDate": self.issue_date,
            "validUntil": self.valid_until,
            "notes": self.notes,
            "terms": self.terms,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Quote":
        now = utc_now()
        return cls(
            id=data["id"],
            quote_number=data.get("quoteNumber", ""),
            customer_id=data.get("customerId", ""),
            customer_name=data.get("customerName", ""),
            line_items=[QuoteLineItem.from_dict(item) for item in data.get("lineItems") or []],
            subtotal=float(data.get("subtotal", 0)),
            tax_rate=float(data.get("taxRate", 0)),
            tax_amount=float(data.get("taxAmount", 0)),
            total=float(data.get("total", 0)),
            status=data.get("status", "draft"),
            issue_date=data.get("issueDate", now),
            valid_until=data.get("validUntil", now),
            notes=data.get("notes"),
            terms=data.get("terms"),
            created_at=data.get("createdAt", now),
            updated_at=data.get("updatedAt", now),
        )


# ------------------------------------------------------------------
# Webhooks
# ------------------------------------------------------------------


@dataclass(slots=True)
class Webhook:
    """A subscription: deliver matching events to ``url``."""

    id: str
    name: str
    url: str
    events: List[str] = field(default_factory=list)
    enabled: bool = True
    secret: Optional[str] = None
    project_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    IMMUTABLE_FIELDS = ("id", "created_at", "updated_at")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "secret": self.secret,
            "events": list(self.events),
            "enabled": self.enabled,
            "project_id": self.project_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Webhook":
        now = utc_now()
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            url=data.get("url", ""),
            events=list(data.get("events") or []),
            enabled=bool(data.get("enabled", True)),
            secret=data.get("secret") or None,
            project_id=data.get("project_id") or None,
            created_at=data.get("created_at", now),
            updated_at=data.get("updated_at", now),
        )


@dataclass(slots=True)
class WebhookPayload:
    """Body posted to a webhook endpoint."""

    event: str
    timestamp: str
    webhook_id: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "timestamp": self.timestamp,
            "webhook_id": self.webhook_id,
            "data": copy.deepcopy(self.data),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebhookPayload":
        return cls(
            event=data["event"],
            timestamp=data["timestamp"],
            webhook_id=data["webhook_id"],
            data=copy.deepcopy(data.get("data") or {}),
        )


@dataclass(slots=True)
class WebhookDelivery:
    """Audit record for one delivery attempt sequence."""

    id: str
    webhook_id: str
    event: str
    payload: Dict[str, Any]
    status: str = "pending"
    attempts: int = 0
    response_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    delivered_at: Optional[str] = None

    IMMUTABLE_FIELDS = ("id", "webhook_id", "event", "payload", "created_at")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "webhook_id": self.webhook_id,
            "event": self.event,
            "payload": copy.deepcopy(self.payload),
            "status": self.status,
            "response_code": self.response_code,
            "response_body": self.response_body,
            "error": self.error,
            "attempts": self.attempts,
            "created_at": self.created_at,
            "delivered_at": self.delivered_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebhookDelivery":
        return cls(
            id=data["id"],
            webhook_id=data.get("webhook_id", ""),
            event=data.get("event", ""),
            payload=copy.deepcopy(data.get("payload") or {}),
            status=data.get("status", "pending"),
            attempts=int(data.get("attempts", 0)),
            response_code=data.get("response_code"),
            response_body=data.get("response_body"),
            error=data.get("error"),
            created_at=data.get("created_at", utc_now()),
            delivered_at=data.get("delivered_at"),
        )


# ------------------------------------------------------------------
# Filters
# ------------------------------------------------------------------


def _contains(value: Optional[str], needle: str) -> bool:
    return bool(value) and needle in value.lower()


@dataclass(slots=True)
class TaskFilters:
    epic_id: Optional[str] = None
    status: Optional[str] = None
    agent: Optional[str] = None
    include_archived: bool = False

    def matches(self, task: Task) -> bool:
        if task.archived and not self.include_archived:
            return False
        if self.epic_id is not None and task.epic_id != self.epic_id:
            return False
        if self.status is not None and task.status != self.status:
            return False
        if self.agent is not None and task.agent != self.agent:
            return False
        return True


@dataclass(slots=True)
class ProductFilters:
    """Category and brand match exactly (case-insensitive); search is a substring over sku, name, description and fitment."""

    category: Optional[str] = None
    brand: Optional[str] = None
    is_active: Optional[bool] = None
    search: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None

    def matches(self, product: Product) -> bool:
        if self.category and product.category.lower() != self.category.lower():
            return False
        if self.brand and product.brand.lower() != self.brand.lower():
            return False
        if self.is_active is not None and product.is_active != self.is_active:
            return False
        if self.min_price is not None and product.sell_price < self.min_price:
            return False
        if self.max_price is not None and product.sell_price > self.max_price:
            return False
        if self.search and not product_matches_query(product, self.search):
            return False
        return True


def product_matches_query(product: Product, query: str) -> bool:
    needle = query.lower()
    return (
        _contains(product.sku, needle)
        or _contains(product.name, needle)
        or _contains(product.description, needle)
        or any(_contains(item, needle) for item in product.fitment)
    )


@dataclass(slots=True)
class CustomerFilters:
    """Source matches exactly (case-insensitive); tag is an exact membership test."""

    type: Optional[str] = None
    tag: Optional[str] = None
    source: Optional[str] = None
    is_active: Optional[bool] = None
    search: Optional[str] = None

    def matches(self, customer: Customer) -> bool:
        if self.type and customer.type != self.type:
            return False
        if self.tag and self.tag not in customer.tags:
            return False
        if self.source and (customer.source or "").lower() != self.source.lower():
            return False
        if self.is_active is not None and customer.is_active != self.is_active:
            return False
        if self.search and not customer_matches_query(customer, self.search):
            return False
        return True


def customer_matches_query(customer: Customer, query: str) -> bool:
    needle = query.lower()
    return any(
        _contains(value, needle)
        for value in (
            customer.name,
            customer.contact_name,
            customer.email,
            customer.phone,
            customer.mobile,
            customer.notes,
        )
    )


@dataclass(slots=True)
class QuoteFilters:
    """Date bounds are inclusive and compare against the issue date (YYYY-MM-DD)."""

    customer_id: Optional[str] = None
    status: Optional[str] = None
    search: Optional[str] = None
    from_date: Optional[str] = None
    to_date: Optional[str] = None

    def matches(self, quote: Quote) -> bool:
        if self.customer_id and quote.customer_id != self.customer_id:
            return False
        if self.status and quote.status != self.status:
            return False
        issued = quote.issue_date[:10]
        if self.from_date and issued < self.from_date[:10]:
            return False
        if self.to_date and issued > self.to_date[:10]:
            return False
        if self.search:
            needle = self.search.lower()
            if not (
                _contains(quote.quote_number, needle)
                or _contains(quote.customer_name, needle)
                or _contains(quote.notes, needle)
            ):
                return False
        return True


# ------------------------------------------------------------------
# Document root
# ------------------------------------------------------------------

COLLECTION_TYPES = {
    "projects": Project,
    "epics": Epic,
    "tasks": Task,
    "products": Product,
    "customers": Customer,
    "quotes": Quote,
    "webhooks": Webhook,
    "webhook_deliveries": WebhookDelivery,
}


@dataclass(slots=True)
class StoreData:
    """In-memory collections for every entity type, plus persisted counters."""

    projects: List[Project] = field(default_factory=list)
    epics: List[Epic] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)
    products: List[Product] = field(default_factory=list)
    customers: List[Customer] = field(default_factory=list)
    quotes: List[Quote] = field(default_factory=list)
    webhooks: List[Webhook] = field(default_factory=list)
    webhook_deliveries: List[WebhookDelivery] = field(default_factory=list)
    counters: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            name: [record.to_dict() for record in getattr(self, name)]
            for name in COLLECTION_TYPES
        }
        document["counters"] = dict(self.counters)
        return document

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StoreData":
        """Hydrate a stored document, upgrading the legacy single-project shape."""
        raw = dict(data or {})
        if not isinstance(raw.get("projects"), list):
            raw["projects"] = []
            legacy = raw.pop("project", None)
            if isinstance(legacy, dict) and legacy.get("id"):
                raw["projects"].append(legacy)
                for key in ("epics", "tasks"):
                    for item in raw.get(key) or []:
                        item["project_id"] = legacy["id"]

        store = cls()
        for name, record_type in COLLECTION_TYPES.items():
            items = raw.get(name)
            if isinstance(items, list):
                setattr(store, name, [record_type.from_dict(item) for item in items])
        counters = raw.get("counters")
        if isinstance(counters, dict):
            store.counters = {key: int(value) for key, value in counters.items()}
        return store

    def snapshot(self, collections: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Deep copies of the named collections (every one by default) plus the counters."""
        names = list(COLLECTION_TYPES) if collections is None else list(collections)
        unknown = [name for name in names if name not in COLLECTION_TYPES]
        if unknown:
            raise KeyError(f"Unknown collection(s): {', '.join(unknown)}")
        saved: Dict[str, Any] = {name: copy.deepcopy(getattr(self, name)) for name in names}
        saved["counters"] = dict(self.counters)
        return saved

    def restore(self, saved: Dict[str, Any]) -> None:
        """Put back every collection held by a ``snapshot``."""
        for name, value in saved.items():
            setattr(self, name, value)

    def all_ids(self) -> set:
        ids = set()
        for name in COLLECTION_TYPES:
            ids.update(record.id for record in getattr(self, name))
        return ids
