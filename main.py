"""MCP server exposing the Flux board, catalog, quotes and webhooks as tools."""

from __future__ import annotations

import functools
import json
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from flux import FluxError, WorkflowManager, build_manager
from flux.config import FluxSettings
from flux.flux_logging import log_error_with_context, setup_logging
from flux.models import STATUS_LABELS, CustomerFilters, ProductFilters, QuoteFilters, TaskFilters

mcp = FastMCP("flux")

_MANAGER: Optional[WorkflowManager] = None


def set_manager(manager: Optional[WorkflowManager]) -> None:
    """Install the manager used by every tool (tests pass an in-memory one)."""
    global _MANAGER
    _MANAGER = manager


def _manager() -> WorkflowManager:
    global _MANAGER
    if _MANAGER is None:
        _MANAGER = build_manager()
    return _MANAGER


def _not_found(kind: str, entity_id: str) -> Dict[str, str]:
    return {"error": f"{kind} '{entity_id}' not found"}


def _present(**fields: Any) -> Dict[str, Any]:
    """Keep only the arguments the caller actually supplied.

    ``None`` means "leave unchanged", so update tools clear an optional field
    when it is given as an empty string instead.
    """
    return {key: value for key, value in fields.items() if value is not None}


def _guarded(func):
    """Report domain errors as an ``{"error": ...}`` result instead of raising."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except FluxError as exc:
            log_error_with_context(exc, {"operation": func.__name__, "arguments": kwargs})
            return {"error": str(exc)}
    return wrapper


# ------------------------------------------------------------------
# Projects
# ------------------------------------------------------------------


@mcp.tool()
@_guarded
def list_projects() -> Dict[str, Any]:
    """List all projects with their task statistics."""
    return {"projects": _manager().list_projects()}


@mcp.tool()
@_guarded
def get_project(project_id: str) -> Dict[str, Any]:
    """Get a project with its epics and task statistics."""
    manager = _manager()
    project = manager.get_project(project_id)
    if project is None:
        return _not_found("Project", project_id)
    return {"project": project, "epics": manager.list_epics(project_id)}


@mcp.tool()
@_guarded
def create_project(name: str, description: Optional[str] = None) -> Dict[str, Any]:
    """Create a new project."""
    project = _manager().create_project(name, description)
    return {"project": project, "message": f"Created project {project['name']} ({project['id']})"}


@mcp.tool()
@_guarded
def update_project(project_id: str, name: Optional[str] = None, description: Optional[str] = None) -> Dict[str, Any]:
    """Rename a project or change its description. Pass description="" to clear it."""
    project = _manager().update_project(project_id, _present(name=name, description=description))
    if project is None:
        return _not_found("Project", project_id)
    return {"project": project}


@mcp.tool()
@_guarded
def delete_project(project_id: str) -> Dict[str, Any]:
    """Delete a project together with all of its epics and tasks."""
    if not _manager().delete_project(project_id):
        return _not_found("Project", project_id)
    return {"deleted": project_id, "message": "Project and all of its epics and tasks were deleted"}


# ------------------------------------------------------------------
# Epics
# ------------------------------------------------------------------


@mcp.tool()
@_guarded
def list_epics(project_id: str) -> Dict[str, Any]:
    """List the epics of a project."""
    epics = _manager().list_epics(project_id)
    if epics is None:
        return _not_found("Project", project_id)
    return {"epics": epics}


@mcp.tool()
@_guarded
def create_epic(project_id: str, title: str, notes: str = "") -> Dict[str, Any]:
    """Create an epic in a project. New epics start in planning."""
    epic = _manager().create_epic(project_id, title, notes)
    if epic is None:
        return _not_found("Project", project_id)
    return {"epic": epic}


@mcp.tool()
@_guarded
def update_epic(
    epic_id: str,
    title: Optional[str] = None,
    status: Optional[str] = None,
    notes: Optional[str] = None,
    depends_on: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Update an epic's title, status, notes or epic dependencies."""
    epic = _manager().update_epic(epic_id, _present(title=title, status=status, notes=notes, depends_on=depends_on))
    if epic is None:
        return _not_found("Epic", epic_id)
    return {"epic": epic}


@mcp.tool()
@_guarded
def delete_epic(epic_id: str) -> Dict[str, Any]:
    """Delete an epic. Its tasks are kept and become unassigned."""
    if not _manager().delete_epic(epic_id):
        return _not_found("Epic", epic_id)
    return {"deleted": epic_id}


# ------------------------------------------------------------------
# Tasks
# ------------------------------------------------------------------


@mcp.tool()
@_guarded
def list_tasks(
    project_id: str,
    epic_id: Optional[str] = None,
    status: Optional[str] = None,
    agent: Optional[str] = None,
    include_archived: bool = False,
) -> Dict[str, Any]:
    """List all tasks in a project with their blocked status."""
    filters = TaskFilters(epic_id=epic_id, status=status, agent=agent, include_archived=include_archived)
    tasks = _manager().list_tasks(project_id, filters)
    if tasks is None:
        return _not_found("Project", project_id)
    return {"tasks": tasks, "count": len(tasks)}


@mcp.tool()
@_guarded
def get_task(task_id: str) -> Dict[str, Any]:
    """Get a task, its blocked status and the tasks blocking it."""
    manager = _manager()
    task = manager.get_task(task_id)
    if task is None:
        return _not_found("Task", task_id)
    blocking = manager.blocking_tasks(task_id)
    return {"task": task, "blocking": blocking}


@mcp.tool()
@_guarded
def create_task(
    project_id: str,
    title: str,
    epic_id: Optional[str] = None,
    notes: str = "",
    agent: Optional[str] = None,
    depends_on: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Create a task in a project. New tasks start in planning."""
    task = _manager().create_task(project_id, title, epic_id=epic_id, notes=notes, agent=agent, depends_on=depends_on)
    if task is None:
        return _not_found("Project", project_id)
    return {"task": task}


@mcp.tool()
@_guarded
def update_task(
    task_id: str,
    title: Optional[str] = None,
    status: Optional[str] = None,
    notes: Optional[str] = None,
    epic_id: Optional[str] = None,
    agent: Optional[str] = None,
    depends_on: Optional[List[str]] = None,
    archived: Optional[bool] = None,
) -> Dict[str, Any]:
    """Update a task. A task in planning must move to todo before in_progress.

    Pass epic_id="" to take the task out of its epic, agent="" to unassign it
    and notes="" to clear its notes.
    """
    updates = _present(
        title=title,
        status=status,
        notes=notes,
        epic_id=epic_id,
        agent=agent,
        depends_on=depends_on,
        archived=archived,
    )
    task = _manager().update_task(task_id, updates)
    if task is None:
        return _not_found("Task", task_id)
    return {"task": task}


@mcp.tool()
@_guarded
def move_task_status(task_id: str, status: str) -> Dict[str, Any]:
    """Move a task to another board column (planning, todo, in_progress, done)."""
    task = _manager().move_task_status(task_id, status)
    if task is None:
        return _not_found("Task", task_id)
    return {"task": task, "message": f"Moved task to {STATUS_LABELS.get(status, status)}"}


@mcp.tool()
@_guarded
def delete_task(task_id: str) -> Dict[str, Any]:
    """Delete a task and remove it from other tasks' dependencies."""
    if not _manager().delete_task(task_id):
        return _not_found("Task", task_id)
    return {"deleted": task_id}


@mcp.tool()
@_guarded
def add_dependency(task_id: str, depends_on_id: str) -> Dict[str, Any]:
    """Make a task depend on another task."""
    task = _manager().add_dependency(task_id, depends_on_id)
    if task is None:
        return _not_found("Task", task_id)
    return {"task": task}


@mcp.tool()
@_guarded
def remove_dependency(task_id: str, depends_on_id: str) -> Dict[str, Any]:
    """Remove a dependency from a task."""
    task = _manager().remove_dependency(task_id, depends_on_id)
    if task is None:
        return {"error": f"Task '{task_id}' has no dependency on '{depends_on_id}'"}
    return {"task": task}


@mcp.tool()
@_guarded
def cleanup_project(project_id: str, archive_tasks: bool = True, archive_epics: bool = True) -> Dict[str, Any]:
    """Archive done tasks and delete epics left without active tasks."""
    result = _manager().cleanup_project(project_id, archive_tasks, archive_epics)
    if result is None:
        return _not_found("Project", project_id)
    return {
        **result,
        "message": f"Archived {result['archivedTasks']} task(s), deleted {result['deletedEpics']} epic(s)",
    }


# ------------------------------------------------------------------
# Products
# ------------------------------------------------------------------


@mcp.tool()
@_guarded
def list_products(
    category: Optional[str] = None,
    brand: Optional[str] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
) -> Dict[str, Any]:
    """List catalog products, optionally filtered."""
    filters = ProductFilters(
        category=category,
        brand=brand,
        is_active=is_active,
        search=search,
        min_price=min_price,
        max_price=max_price,
    )
    products = _manager().list_products(filters)
    return {"products": products, "count": len(products)}


@mcp.tool()
@_guarded
def get_product(product_id: Optional[str] = None, sku: Optional[str] = None) -> Dict[str, Any]:
    """Get a product by id or by SKU."""
    manager = _manager()
    if product_id:
        product = manager.get_product(product_id)
    elif sku:
        product = manager.get_product_by_sku(sku)
    else:
        return {"error": "Provide product_id or sku"}
    if product is None:
        return _not_found("Product", product_id or sku)
    return {"product": product}


@mcp.tool()
@_guarded
def search_products(query: str) -> Dict[str, Any]:
    """Search products by SKU, name, description or fitment."""
    products = _manager().search_products(query)
    return {"products": products, "count": len(products)}


@mcp.tool()
@_guarded
def list_product_categories() -> Dict[str, Any]:
    """List distinct product categories and brands."""
    manager = _manager()
    return {"categories": manager.product_categories(), "brands": manager.product_brands()}


@mcp.tool()
@_guarded
def create_product(
    sku: str,
    name: str,
    category: str,
    sell_price: float,
    subcategory: Optional[str] = None,
    brand: Optional[str] = None,
    cost_price: Optional[float] = None,
    currency: Optional[str] = None,
    description: Optional[str] = None,
    fitment: Optional[List[str]] = None,
    is_active: bool = True,
) -> Dict[str, Any]:
    """Add a product to the catalog. SKUs are unique regardless of case."""
    data = _present(
        sku=sku,
        name=name,
        category=category,
        sell_price=sell_price,
        subcategory=subcategory,
        brand=brand,
        cost_price=cost_price,
        currency=currency,
        description=description,
        fitment=fitment,
        is_active=is_active,
    )
    return {"product": _manager().create_product(data)}


@mcp.tool()
@_guarded
def update_product(
    product_id: str,
    sku: Optional[str] = None,
    name: Optional[str] = None,
    category: Optional[str] = None,
    sell_price: Optional[float] = None,
    subcategory: Optional[str] = None,
    brand: Optional[str] = None,
    cost_price: Optional[float] = None,
    currency: Optional[str] = None,
    description: Optional[str] = None,
    fitment: Optional[List[str]] = None,
    is_active: Optional[bool] = None,
) -> Dict[str, Any]:
    """Update fields of a product. Pass "" to clear subcategory, brand or description."""
    updates = _present(
        sku=sku,
        name=name,
        category=category,
        sell_price=sell_price,
        subcategory=subcategory,
        brand=brand,
        cost_price=cost_price,
        currency=currency,
        description=description,
        fitment=fitment,
        is_active=is_active,
    )
    product = _manager().update_product(product_id, updates)
    if product is None:
        return _not_found("Product", product_id)
    return {"product": product}


@mcp.tool()
@_guarded
def delete_product(product_id: str, hard: bool = False) -> Dict[str, Any]:
    """Deactivate a product, or purge it when hard is true."""
    if not _manager().delete_product(product_id, hard=hard):
        return _not_found("Product", product_id)
    return {"deleted": product_id, "hard": hard}


# ------------------------------------------------------------------
# Customers
# ------------------------------------------------------------------


@mcp.tool()
@_guarded
def list_customers(
    type: Optional[str] = None,
    tag: Optional[str] = None,
    source: Optional[str] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
) -> Dict[str, Any]:
    """List customers, optionally filtered."""
    filters = CustomerFilters(type=type, tag=tag, source=source, is_active=is_active, search=search)
    customers = _manager().list_customers(filters)
    return {"customers": customers, "count": len(customers)}


@mcp.tool()
@_guarded
def get_customer(customer_id: Optional[str] = None, email: Optional[str] = None) -> Dict[str, Any]:
    """Get a customer by id or email, with their quotes."""
    manager = _manager()
    if customer_id:
        customer = manager.get_customer(customer_id)
    elif email:
        customer = manager.get_customer_by_email(email)
    else:
        return {"error": "Provide customer_id or email"}
    if customer is None:
        return _not_found("Customer", customer_id or email)
    return {"customer": customer, "quotes": manager.quotes_by_customer(customer["id"])}


@mcp.tool()
@_guarded
def search_customers(query: str) -> Dict[str, Any]:
    """Search customers by name, contact, email, phone, mobile or notes."""
    customers = _manager().search_customers(query)
    return {"customers": customers, "count": len(customers)}


@mcp.tool()
@_guarded
def list_customer_tags() -> Dict[str, Any]:
    """List distinct customer tags and sources."""
    manager = _manager()
    return {"tags": manager.customer_tags(), "sources": manager.customer_sources()}


@mcp.tool()
@_guarded
def create_customer(
    type: str,
    name: str,
    contact_name: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    mobile: Optional[str] = None,
    address: Optional[Dict[str, Optional[str]]] = None,
    abn: Optional[str] = None,
    tags: Optional[List[str]] = None,
    source: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Add a customer (type is individual or business). Emails are unique regardless of case."""
    data = _present(
        type=type,
        name=name,
        contact_name=contact_name,
        email=email,
        phone=phone,
        mobile=mobile,
        address=address,
        abn=abn,
        tags=tags,
        source=source,
        notes=notes,
    )
    return {"customer": _manager().create_customer(data)}


@mcp.tool()
@_guarded
def update_customer(
    customer_id: str,
    type: Optional[str] = None,
    name: Optional[str] = None,
    contact_name: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    mobile: Optional[str] = None,
    address: Optional[Dict[str, Optional[str]]] = None,
    abn: Optional[str] = None,
    tags: Optional[List[str]] = None,
    source: Optional[str] = None,
    notes: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> Dict[str, Any]:
    """Update fields of a customer. Pass "" to clear an optional text field such as email or phone."""
    updates = _present(
        type=type,
        name=name,
        contact_name=contact_name,
        email=email,
        phone=phone,
        mobile=mobile,
        address=address,
        abn=abn,
        tags=tags,
        source=source,
        notes=notes,
        is_active=is_active,
    )
    customer = _manager().update_customer(customer_id, updates)
    if customer is None:
        return _not_found("Customer", customer_id)
    return {"customer": customer}


@mcp.tool()
@_guarded
def delete_customer(customer_id: str, hard: bool = False) -> Dict[str, Any]:
    """Deactivate a customer, or purge them when hard is true."""
    if not _manager().delete_customer(customer_id, hard=hard):
        return _not_found("Customer", customer_id)
    return {"deleted": customer_id, "hard": hard}


# ------------------------------------------------------------------
# Quotes
# ------------------------------------------------------------------


@mcp.tool()
@_guarded
def list_quotes(
    customer_id: Optional[str] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
) -> Dict[str, Any]:
    """List quotes, newest first. Dates are inclusive YYYY-MM-DD bounds on the issue date."""
    filters = QuoteFilters(
        customer_id=customer_id,
        status=status,
        search=search,
        from_date=from_date,
        to_date=to_date,
    )
    quotes = _manager().list_quotes(filters)
    return {"quotes": quotes, "count": len(quotes)}


@mcp.tool()
@_guarded
def get_quote(quote_id: str) -> Dict[str, Any]:
    """Get a quote with its line items and totals."""
    quote = _manager().get_quote(quote_id)
    if quote is None:
        return _not_found("Quote", quote_id)
    return {"quote": quote}


@mcp.tool()
@_guarded
def create_quote(
    customer_id: str,
    line_items: List[Dict[str, Any]],
    tax_rate: Optional[float] = None,
    valid_days: Optional[int] = None,
    notes: Optional[str] = None,
    terms: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a quote. Each line item needs product_id and quantity, and may set unit_price and discount (0-100)."""
    options = _present(tax_rate=tax_rate, valid_days=valid_days, notes=notes, terms=terms)
    quote = _manager().create_quote(customer_id, line_items, **options)
    return {"quote": quote, "message": f"Created quote {quote['quoteNumber']} totalling {quote['total']:.2f}"}


@mcp.tool()
@_guarded
def update_quote(
    quote_id: str,
    customer_id: Optional[str] = None,
    line_items: Optional[List[Dict[str, Any]]] = None,
    tax_rate: Optional[float] = None,
    valid_days: Optional[int] = None,
    notes: Optional[str] = None,
    terms: Optional[str] = None,
    status: Optional[str] = None,
) -> Dict[str, Any]:
    """Update a quote. New line items or a new tax rate reprice it. Pass "" to clear notes or terms."""
    updates = _present(
        customer_id=customer_id,
        line_items=line_items,
        tax_rate=tax_rate,
        valid_days=valid_days,
        notes=notes,
        terms=terms,
        status=status,
    )
    quote = _manager().update_quote(quote_id, updates)
    if quote is None:
        return _not_found("Quote", quote_id)
    return {"quote": quote}


@mcp.tool()
@_guarded
def update_quote_status(quote_id: str, status: str) -> Dict[str, Any]:
    """Set a quote's status (draft, sent, accepted, rejected, expired)."""
    quote = _manager().update_quote_status(quote_id, status)
    if quote is None:
        return _not_found("Quote", quote_id)
    return {"quote": quote}


@mcp.tool()
@_guarded
def delete_quote(quote_id: str) -> Dict[str, Any]:
    """Delete a quote permanently."""
    if not _manager().delete_quote(quote_id):
        return _not_found("Quote", quote_id)
    return {"deleted": quote_id}


# ------------------------------------------------------------------
# Webhooks
# ------------------------------------------------------------------


@mcp.tool()
@_guarded
def list_webhooks() -> Dict[str, Any]:
    """List webhook subscriptions."""
    return {"webhooks": _manager().list_webhooks()}


@mcp.tool()
@_guarded
def create_webhook(
    name: str,
    url: str,
    events: List[str],
    secret: Optional[str] = None,
    project_id: Optional[str] = None,
    enabled: bool = True,
) -> Dict[str, Any]:
    """Subscribe a URL to events such as task.created or quote.status_changed."""
    webhook = _manager().create_webhook(name, url, events, secret=secret, project_id=project_id, enabled=enabled)
    return {"webhook": webhook}


@mcp.tool()
@_guarded
def update_webhook(
    webhook_id: str,
    name: Optional[str] = None,
    url: Optional[str] = None,
    events: Optional[List[str]] = None,
    secret: Optional[str] = None,
    project_id: Optional[str] = None,
    enabled: Optional[bool] = None,
) -> Dict[str, Any]:
    """Update a webhook subscription. Pass secret="" to stop signing, project_id="" to unscope it."""
    updates = _present(name=name, url=url, events=events, secret=secret, project_id=project_id, enabled=enabled)
    webhook = _manager().update_webhook(webhook_id, updates)
    if webhook is None:
        return _not_found("Webhook", webhook_id)
    return {"webhook": webhook}


@mcp.tool()
@_guarded
def delete_webhook(webhook_id: str) -> Dict[str, Any]:
    """Delete a webhook and its delivery history."""
    if not _manager().delete_webhook(webhook_id):
        return _not_found("Webhook", webhook_id)
    return {"deleted": webhook_id}


@mcp.tool()
@_guarded
def test_webhook(webhook_id: str) -> Dict[str, Any]:
    """Send a test delivery to a webhook."""
    result = _manager().test_webhook(webhook_id)
    if result is None:
        return _not_found("Webhook", webhook_id)
    return result


@mcp.tool()
@_guarded
def list_webhook_deliveries(webhook_id: str, limit: int = 50) -> Dict[str, Any]:
    """List recent deliveries for a webhook, most recent first."""
    deliveries = _manager().list_webhook_deliveries(webhook_id, limit)
    if deliveries is None:
        return _not_found("Webhook", webhook_id)
    return {"deliveries": deliveries}


@mcp.tool()
@_guarded
def cleanup_webhook_deliveries(max_age_days: Optional[float] = None) -> Dict[str, Any]:
    """Remove delivery records older than max_age_days (default: configured retention)."""
    return {"removed": _manager().cleanup_old_deliveries(max_age_days)}


# ------------------------------------------------------------------
# Resources
# ------------------------------------------------------------------


@mcp.resource("flux://projects")
def resource_projects() -> str:
    """Project list with task statistics."""
    projects = _manager().list_projects()
    if not projects:
        return "No projects yet."
    lines = ["Flux Projects"]
    for project in projects:
        stats = project["stats"]
        lines.append(f"- {project['name']} ({project['id']}): {stats['done']}/{stats['total']} tasks done")
    return "\n".join(lines)


@mcp.resource("flux://projects/{project_id}")
def resource_project(project_id: str) -> str:
    """A single project as JSON."""
    return json.dumps(_manager().get_project(project_id) or _not_found("Project", project_id), indent=2)


@mcp.resource("flux://projects/{project_id}/epics")
def resource_project_epics(project_id: str) -> str:
    """A project's epics as JSON."""
    epics = _manager().list_epics(project_id)
    return json.dumps(epics if epics is not None else _not_found("Project", project_id), indent=2)


@mcp.resource("flux://projects/{project_id}/tasks")
def resource_project_tasks(project_id: str) -> str:
    """A project's board grouped by status, with blocked flags."""
    tasks = _manager().list_tasks(project_id)
    if tasks is None:
        return json.dumps(_not_found("Project", project_id), indent=2)
    board = {STATUS_LABELS[status]: [t for t in tasks if t["status"] == status] for status in STATUS_LABELS}
    return json.dumps(board, indent=2)


def main() -> None:
    settings = FluxSettings.from_env()
    setup_logging(settings.log_level, settings.log_file)
    set_manager(build_manager(settings))
    try:
        mcp.run(transport="stdio")
    finally:
        _manager().close()


if __name__ == "__main__":
    main()
