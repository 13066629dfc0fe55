"""REST surface for Flux (FastAPI).

Run with ``uvicorn flux.api:app``. Every route delegates to a
:class:`~flux.workflow.WorkflowManager`; the manager is built from the
environment on first use unless one is passed to :func:`create_app`.
Catalog, customer and quote bodies use camelCase field names; board and
webhook bodies use snake_case, matching the stored records.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .errors import ConflictError, PersistenceError, ValidationError
from .flux_logging import performance_monitor
from .models import CUSTOMER_TYPES, CustomerFilters, ProductFilters, QuoteFilters, TaskFilters
from .workflow import WorkflowManager, build_manager

logger = logging.getLogger("flux.api")


# ============================================================
# SCHEMAS
# ============================================================


class _Body(BaseModel):
    model_config = ConfigDict(extra="forbid")


class _CamelBody(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


# --- Projects / epics / tasks ---
class ProjectCreate(_Body):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None


class ProjectUpdate(_Body):
    name: Optional[str] = None
    description: Optional[str] = None


class EpicCreate(_Body):
    title: str = Field(..., min_length=1)
    notes: str = ""


class EpicUpdate(_Body):
    title: Optional[str] = None
    status: Optional[str] = None
    depends_on: Optional[List[str]] = None
    notes: Optional[str] = None


class TaskCreate(_Body):
    title: str = Field(..., min_length=1)
    epic_id: Optional[str] = None
    notes: str = ""
    agent: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)


class TaskUpdate(_Body):
    title: Optional[str] = None
    status: Optional[str] = None
    depends_on: Optional[List[str]] = None
    notes: Optional[str] = None
    epic_id: Optional[str] = None
    agent: Optional[str] = None
    archived: Optional[bool] = None


class DependencyCreate(_Body):
    depends_on_id: str = Field(..., min_length=1)


class CleanupRequest(_CamelBody):
    archive_tasks: bool = True
    archive_epics: bool = True


# --- Catalog ---
class ProductCreate(_CamelBody):
    sku: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    sell_price: float
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    cost_price: Optional[float] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    fitment: Optional[List[str]] = None
    is_active: bool = True


class ProductUpdate(_CamelBody):
    sku: Optional[str] = None
    name: Optional[str] = None
    category: Optional[str] = None
    sell_price: Optional[float] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    cost_price: Optional[float] = None
    currency: Optional[str] = None
    description: Optional[str] = None
    fitment: Optional[List[str]] = None
    is_active: Optional[bool] = None


# --- Customers ---
class AddressIn(_Body):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None


class CustomerCreate(_CamelBody):
    type: str = Field(..., pattern="^(" + "|".join(CUSTOMER_TYPES) + ")$")
    name: str = Field(..., min_length=1)
    contact_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    mobile: Optional[str] = None
    address: Optional[AddressIn] = None
    abn: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    source: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True


class CustomerUpdate(_CamelBody):
    type: Optional[str] = None
    name: Optional[str] = None
    contact_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    mobile: Optional[str] = None
    address: Optional[AddressIn] = None
    abn: Optional[str] = None
    tags: Optional[List[str]] = None
    source: Optional[str] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None


# --- Quotes ---
class LineItemIn(_CamelBody):
    product_id: str
    quantity: float
    unit_price: Optional[float] = None
    discount: Optional[float] = None


class QuoteCreate(_CamelBody):
    customer_id: str
    line_items: List[LineItemIn]
    tax_rate: Optional[float] = None
    valid_days: Optional[int] = None
    notes: Optional[str] = None
    terms: Optional[str] = None
    status: str = "draft"


class QuoteUpdate(_CamelBody):
    customer_id: Optional[str] = None
    line_items: Optional[List[LineItemIn]] = None
    tax_rate: Optional[float] = None
    valid_days: Optional[int] = None
    notes: Optional[str] = None
    terms: Optional[str] = None
    status: Optional[str] = None


class QuoteStatusUpdate(_Body):
    status: str


# --- Webhooks ---
class WebhookCreate(_Body):
    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    events: List[str]
    secret: Optional[str] = None
    project_id: Optional[str] = None
    enabled: bool = True


class WebhookUpdate(_Body):
    name: Optional[str] = None
    url: Optional[str] = None
    events: Optional[List[str]] = None
    secret: Optional[str] = None
    project_id: Optional[str] = None
    enabled: Optional[bool] = None


class DeliveryCleanup(_CamelBody):
    max_age_days: Optional[float] = Field(None, ge=0)


# ============================================================
# HELPERS
# ============================================================


def get_manager(request: Request) -> WorkflowManager:
    manager = request.app.state.manager
    if manager is None:
        manager = build_manager()
        request.app.state.manager = manager
    return manager


def _found(value: Any, kind: str) -> Any:
    if value is None or value is False:
        raise HTTPException(404, f"{kind} not found")
    return value


def _updates(body: BaseModel) -> Dict[str, Any]:
    return body.model_dump(exclude_unset=True)


SUCCESS = {"success": True}

router = APIRouter(prefix="/api")


# ============================================================
# PROJECTS
# ============================================================


@router.get("/projects")
def list_projects(manager: WorkflowManager = Depends(get_manager)):
    return manager.list_projects()


@router.post("/projects", status_code=201)
def create_project(body: ProjectCreate, manager: WorkflowManager = Depends(get_manager)):
    return manager.create_project(body.name, body.description)


@router.get("/projects/{project_id}")
def get_project(project_id: str, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.get_project(project_id), "Project")


@router.patch("/projects/{project_id}")
def update_project(project_id: str, body: ProjectUpdate, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.update_project(project_id, _updates(body)), "Project")


@router.delete("/projects/{project_id}")
def delete_project(project_id: str, manager: WorkflowManager = Depends(get_manager)):
    _found(manager.delete_project(project_id), "Project")
    return SUCCESS


@router.get("/projects/{project_id}/epics")
def list_epics(project_id: str, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.list_epics(project_id), "Project")


@router.post("/projects/{project_id}/epics", status_code=201)
def create_epic(project_id: str, body: EpicCreate, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.create_epic(project_id, body.title, body.notes), "Project")


@router.get("/projects/{project_id}/tasks")
def list_tasks(
    project_id: str,
    epic_id: Optional[str] = None,
    status: Optional[str] = None,
    agent: Optional[str] = None,
    include_archived: bool = False,
    manager: WorkflowManager = Depends(get_manager),
):
    filters = TaskFilters(epic_id=epic_id, status=status, agent=agent, include_archived=include_archived)
    return _found(manager.list_tasks(project_id, filters), "Project")


@router.post("/projects/{project_id}/tasks", status_code=201)
def create_task(project_id: str, body: TaskCreate, manager: WorkflowManager = Depends(get_manager)):
    task = manager.create_task(
        project_id,
        body.title,
        epic_id=body.epic_id,
        notes=body.notes,
        agent=body.agent,
        depends_on=body.depends_on,
    )
    return _found(task, "Project")


@router.post("/projects/{project_id}/cleanup")
def cleanup_project(
    project_id: str,
    body: Optional[CleanupRequest] = None,
    manager: WorkflowManager = Depends(get_manager),
):
    body = body or CleanupRequest()
    result = _found(manager.cleanup_project(project_id, body.archive_tasks, body.archive_epics), "Project")
    return {**SUCCESS, **result}


# ============================================================
# EPICS
# ============================================================


@router.get("/epics/{epic_id}")
def get_epic(epic_id: str, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.get_epic(epic_id), "Epic")


@router.patch("/epics/{epic_id}")
def update_epic(epic_id: str, body: EpicUpdate, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.update_epic(epic_id, _updates(body)), "Epic")


@router.delete("/epics/{epic_id}")
def delete_epic(epic_id: str, manager: WorkflowManager = Depends(get_manager)):
    _found(manager.delete_epic(epic_id), "Epic")
    return SUCCESS


# ============================================================
# TASKS
# ============================================================


@router.get("/tasks/{task_id}")
def get_task(task_id: str, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.get_task(task_id), "Task")


@router.patch("/tasks/{task_id}")
def update_task(task_id: str, body: TaskUpdate, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.update_task(task_id, _updates(body)), "Task")


@router.delete("/tasks/{task_id}")
def delete_task(task_id: str, manager: WorkflowManager = Depends(get_manager)):
    _found(manager.delete_task(task_id), "Task")
    return SUCCESS


@router.post("/tasks/{task_id}/dependencies")
def add_dependency(task_id: str, body: DependencyCreate, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.add_dependency(task_id, body.depends_on_id), "Task")


@router.delete("/tasks/{task_id}/dependencies/{depends_on_id}")
def remove_dependency(task_id: str, depends_on_id: str, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.remove_dependency(task_id, depends_on_id), "Dependency")


# ============================================================
# PRODUCTS
# ============================================================


@router.get("/products/categories")
def product_categories(manager: WorkflowManager = Depends(get_manager)):
    return manager.product_categories()


@router.get("/products/brands")
def product_brands(manager: WorkflowManager = Depends(get_manager)):
    return manager.product_brands()


@router.get("/products")
def list_products(
    category: Optional[str] = None,
    brand: Optional[str] = None,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    search: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice"),
    max_price: Optional[float] = Query(None, alias="maxPrice"),
    manager: WorkflowManager = Depends(get_manager),
):
    filters = ProductFilters(
        category=category,
        brand=brand,
        is_active=is_active,
        search=search,
        min_price=min_price,
        max_price=max_price,
    )
    return manager.list_products(filters)


@router.post("/products", status_code=201)
def create_product(body: ProductCreate, manager: WorkflowManager = Depends(get_manager)):
    return manager.create_product(_updates(body) | {"is_active": body.is_active})


@router.get("/products/{product_id}")
def get_product(product_id: str, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.get_product(product_id), "Product")


@router.patch("/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.update_product(product_id, _updates(body)), "Product")


@router.delete("/products/{product_id}")
def delete_product(product_id: str, hard: bool = False, manager: WorkflowManager = Depends(get_manager)):
    _found(manager.delete_product(product_id, hard=hard), "Product")
    return SUCCESS


# ============================================================
# CUSTOMERS
# ============================================================


@router.get("/customers/tags")
def customer_tags(manager: WorkflowManager = Depends(get_manager)):
    return manager.customer_tags()


@router.get("/customers/sources")
def customer_sources(manager: WorkflowManager = Depends(get_manager)):
    return manager.customer_sources()


@router.get("/customers")
def list_customers(
    type: Optional[str] = None,
    tag: Optional[str] = None,
    source: Optional[str] = None,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    search: Optional[str] = None,
    manager: WorkflowManager = Depends(get_manager),
):
    filters = CustomerFilters(type=type, tag=tag, source=source, is_active=is_active, search=search)
    return manager.list_customers(filters)


@router.post("/customers", status_code=201)
def create_customer(body: CustomerCreate, manager: WorkflowManager = Depends(get_manager)):
    return manager.create_customer(_updates(body) | {"type": body.type, "is_active": body.is_active})


@router.get("/customers/{customer_id}")
def get_customer(customer_id: str, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.get_customer(customer_id), "Customer")


@router.patch("/customers/{customer_id}")
def update_customer(customer_id: str, body: CustomerUpdate, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.update_customer(customer_id, _updates(body)), "Customer")


@router.delete("/customers/{customer_id}")
def delete_customer(customer_id: str, hard: bool = False, manager: WorkflowManager = Depends(get_manager)):
    _found(manager.delete_customer(customer_id, hard=hard), "Customer")
    return SUCCESS


@router.get("/customers/{customer_id}/quotes")
def customer_quotes(customer_id: str, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.quotes_by_customer(customer_id), "Customer")


# ============================================================
# QUOTES
# ============================================================


@router.get("/quotes")
def list_quotes(
    customer_id: Optional[str] = Query(None, alias="customerId"),
    status: Optional[str] = None,
    search: Optional[str] = None,
    from_date: Optional[str] = Query(None, alias="fromDate"),
    to_date: Optional[str] = Query(None, alias="toDate"),
    manager: WorkflowManager = Depends(get_manager),
):
    filters = QuoteFilters(
        customer_id=customer_id,
        status=status,
        search=search,
        from_date=from_date,
        to_date=to_date,
    )
    return manager.list_quotes(filters)


@router.post("/quotes", status_code=201)
def create_quote(body: QuoteCreate, manager: WorkflowManager = Depends(get_manager)):
    options = body.model_dump(exclude_unset=True, exclude={"customer_id", "line_items"})
    line_items = [item.model_dump(exclude_none=True) for item in body.line_items]
    return manager.create_quote(body.customer_id, line_items, **options)


@router.get("/quotes/{quote_id}")
def get_quote(quote_id: str, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.get_quote(quote_id), "Quote")


@router.patch("/quotes/{quote_id}")
def update_quote(quote_id: str, body: QuoteUpdate, manager: WorkflowManager = Depends(get_manager)):
    updates = _updates(body)
    if body.line_items is not None:
        updates["line_items"] = [item.model_dump(exclude_none=True) for item in body.line_items]
    return _found(manager.update_quote(quote_id, updates), "Quote")


@router.patch("/quotes/{quote_id}/status")
def update_quote_status(quote_id: str, body: QuoteStatusUpdate, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.update_quote_status(quote_id, body.status), "Quote")


@router.delete("/quotes/{quote_id}")
def delete_quote(quote_id: str, manager: WorkflowManager = Depends(get_manager)):
    _found(manager.delete_quote(quote_id), "Quote")
    return SUCCESS


# ============================================================
# WEBHOOKS
# ============================================================


@router.get("/webhooks")
def list_webhooks(manager: WorkflowManager = Depends(get_manager)):
    return manager.list_webhooks()


@router.post("/webhooks", status_code=201)
def create_webhook(body: WebhookCreate, manager: WorkflowManager = Depends(get_manager)):
    return manager.create_webhook(
        body.name,
        body.url,
        body.events,
        secret=body.secret,
        project_id=body.project_id,
        enabled=body.enabled,
    )


@router.post("/webhooks/deliveries/cleanup")
def cleanup_deliveries(body: Optional[DeliveryCleanup] = None, manager: WorkflowManager = Depends(get_manager)):
    max_age_days = body.max_age_days if body else None
    return {**SUCCESS, "removed": manager.cleanup_old_deliveries(max_age_days)}


@router.get("/webhooks/{webhook_id}")
def get_webhook(webhook_id: str, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.get_webhook(webhook_id), "Webhook")


@router.patch("/webhooks/{webhook_id}")
def update_webhook(webhook_id: str, body: WebhookUpdate, manager: WorkflowManager = Depends(get_manager)):
    return _found(manager.update_webhook(webhook_id, _updates(body)), "Webhook")


@router.delete("/webhooks/{webhook_id}")
def delete_webhook(webhook_id: str, manager: WorkflowManager = Depends(get_manager)):
    _found(manager.delete_webhook(webhook_id), "Webhook")
    return SUCCESS


@router.post("/webhooks/{webhook_id}/test")
def test_webhook(webhook_id: str, manager: WorkflowManager = Depends(get_manager)):
    return {**SUCCESS, **_found(manager.test_webhook(webhook_id), "Webhook")}


@router.get("/webhooks/{webhook_id}/deliveries")
def list_deliveries(
    webhook_id: str,
    limit: int = Query(50, ge=1, le=1000),
    manager: WorkflowManager = Depends(get_manager),
):
    return _found(manager.list_webhook_deliveries(webhook_id, limit), "Webhook")


# ============================================================
# APP
# ============================================================


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(manager: Optional[WorkflowManager] = None) -> FastAPI:
    app = FastAPI(title="Flux API")
    app.state.manager = manager
    app.include_router(router)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(ConflictError)
    async def conflict_error(request: Request, exc: ConflictError):
        return _error(409, str(exc))

    @app.exception_handler(PersistenceError)
    async def persistence_error(request: Request, exc: PersistenceError):
        logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}")
        return _error(503, "Storage is unavailable, try again shortly")

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    @app.get("/api/metrics")
    def metrics():
        """Running duration totals for the instrumented operations."""
        return performance_monitor.summary()

    return app


app = create_app()
