"""Integration tests for the Flux MCP server.

Tools are called directly as plain functions against an in-memory manager,
the same way the MCP runtime invokes them.
"""

import json

import pytest

import main


@pytest.fixture
def tools(manager):
    main.set_manager(manager)
    yield main
    main.set_manager(None)


class TestProjectTools:
    """Test cases for project, epic and task tools."""

    def test_board_workflow(self, tools):
        """Test creating a board and walking a task across it."""
        project = tools.create_project("Launch", "Q3 launch")["project"]
        epic = tools.create_epic(project["id"], "Marketing site")["epic"]
        task = tools.create_task(project["id"], "Write copy", epic_id=epic["id"], agent="claude")["task"]

        assert tools.list_tasks(project["id"])["count"] == 1
        assert tools.move_task_status(task["id"], "todo")["message"] == "Moved task to To Do"
        assert tools.move_task_status(task["id"], "in_progress")["task"]["status"] == "in_progress"

        detail = tools.get_project(project["id"])
        assert detail["project"]["stats"] == {"total": 1, "done": 0}
        assert [e["id"] for e in detail["epics"]] == [epic["id"]]

    def test_transition_error_is_reported(self, tools):
        """Test a forbidden move comes back as an error result."""
        project = tools.create_project("Launch")["project"]
        task = tools.create_task(project["id"], "Write copy")["task"]
        result = tools.move_task_status(task["id"], "in_progress")
        assert "todo" in result["error"]

    def test_dependencies_and_blocking(self, tools):
        """Test dependency tools and the blocking list."""
        project = tools.create_project("Launch")["project"]
        first = tools.create_task(project["id"], "Design")["task"]
        second = tools.create_task(project["id"], "Build")["task"]

        assert tools.add_dependency(second["id"], first["id"])["task"]["blocked"] is True
        blocking = tools.get_task(second["id"])["blocking"]
        assert [t["id"] for t in blocking] == [first["id"]]

        assert tools.remove_dependency(second["id"], first["id"])["task"]["blocked"] is False
        assert "error" in tools.remove_dependency(second["id"], first["id"])
        assert "error" in tools.add_dependency(second["id"], second["id"])

    def test_cleanup(self, tools):
        """Test the cleanup tool reports counts."""
        project = tools.create_project("Launch")["project"]
        task = tools.create_task(project["id"], "Ship")["task"]
        tools.update_task(task["id"], status="done")
        tools.create_epic(project["id"], "Empty")

        result = tools.cleanup_project(project["id"])
        assert result["archivedTasks"] == 1
        assert result["deletedEpics"] == 1
        assert tools.list_tasks(project["id"], include_archived=True)["count"] == 1

    def test_not_found_results(self, tools):
        """Test unknown ids come back as error results."""
        assert tools.get_project("missing") == {"error": "Project 'missing' not found"}
        assert "error" in tools.create_task("missing", "Orphan")
        assert "error" in tools.delete_task("missing")
        assert "error" in tools.update_epic("missing", title="x")

    def test_empty_string_clears_optional_fields(self, tools):
        """Test update tools clear optional fields given as empty strings."""
        project = tools.create_project("Launch", "Q3 launch")["project"]
        epic = tools.create_epic(project["id"], "Site")["epic"]
        task = tools.create_task(project["id"], "Copy", epic_id=epic["id"], agent="codex", notes="draft")["task"]

        assert tools.update_project(project["id"], description="")["project"]["description"] is None
        cleared = tools.update_task(task["id"], epic_id="", agent="", notes="")["task"]
        assert (cleared["epic_id"], cleared["agent"], cleared["notes"]) == (None, None, "")

        untouched = tools.update_task(task["id"], title="Copy v2")["task"]
        assert untouched["status"] == "planning"

        webhook = tools.create_webhook(
            "scoped", "https://example.com/h", ["task.created"], secret="s3cret", project_id=project["id"]
        )["webhook"]
        updated = tools.update_webhook(webhook["id"], secret="", project_id="")["webhook"]
        assert (updated["secret"], updated["project_id"]) == (None, None)

    def test_delete_project(self, tools):
        """Test deleting a project removes it from the list."""
        project = tools.create_project("Temporary")["project"]
        assert tools.delete_project(project["id"])["deleted"] == project["id"]
        assert tools.list_projects() == {"projects": []}


class TestCatalogTools:
    """Test cases for product, customer and quote tools."""

    def test_quote_flow(self, tools):
        """Test creating catalog data and pricing a quote."""
        pads = tools.create_product("PAD-1", "Brake Pads", "Brakes", 100, brand="Bendix")["product"]
        oil = tools.create_product("OIL-1", "Engine Oil", "Oils", 50)["product"]
        customer = tools.create_customer("business", "Acme", email="ops@acme.test")["customer"]

        result = tools.create_quote(
            customer["id"],
            [{"product_id": pads["id"], "quantity": 2, "discount": 10}, {"product_id": oil["id"], "quantity": 1}],
            tax_rate=10,
        )
        assert result["quote"]["total"] == 253.0
        assert result["message"] == "Created quote Q-2025-0001 totalling 253.00"

        sent = tools.update_quote_status(result["quote"]["id"], "sent")["quote"]
        assert sent["status"] == "sent"
        assert tools.list_quotes(status="sent")["count"] == 1
        assert [q["id"] for q in tools.get_customer(email="OPS@acme.test")["quotes"]] == [sent["id"]]

    def test_quote_validation_error(self, tools):
        """Test quote errors are returned, not raised."""
        customer = tools.create_customer("individual", "Jane")["customer"]
        assert "error" in tools.create_quote(customer["id"], [])

    def test_product_lookup_and_conflict(self, tools):
        """Test SKU lookup, category listing and duplicate SKUs."""
        tools.create_product("PAD-1", "Brake Pads", "Brakes", 100, brand="Bendix", fitment=["Hilux"])
        assert tools.get_product(sku="pad-1")["product"]["name"] == "Brake Pads"
        assert tools.list_product_categories() == {"categories": ["Brakes"], "brands": ["Bendix"]}
        assert tools.search_products("hilux")["count"] == 1
        assert "already exists" in tools.create_product("PAD-1", "Copy", "Brakes", 1)["error"]
        assert tools.get_product() == {"error": "Provide product_id or sku"}

    def test_soft_and_hard_delete(self, tools):
        """Test deactivation then purge of a product."""
        product = tools.create_product("PAD-1", "Brake Pads", "Brakes", 100)["product"]
        tools.delete_product(product["id"])
        assert tools.get_product(product["id"])["product"]["isActive"] is False
        assert tools.list_products(is_active=True)["count"] == 0
        tools.delete_product(product["id"], hard=True)
        assert "error" in tools.get_product(product["id"])

    def test_customer_tags(self, tools):
        """Test tag and source listing and customer updates."""
        customer = tools.create_customer("individual", "Jane", tags=["vip"], source="Referral")["customer"]
        tools.update_customer(customer["id"], address={"city": "Perth"})
        assert tools.get_customer(customer["id"])["customer"]["address"]["city"] == "Perth"
        assert tools.list_customer_tags() == {"tags": ["vip"], "sources": ["Referral"]}
        assert tools.search_customers("jan")["count"] == 1


class TestWebhookTools:
    """Test cases for webhook tools."""

    def test_webhook_lifecycle(self, tools, handler):
        """Test create, trigger, test delivery and delete."""
        webhook = tools.create_webhook("audit", "https://example.com/hook", ["project.created"])["webhook"]
        tools.create_project("Triggers")
        assert handler.events == ["project.created"]

        result = tools.test_webhook(webhook["id"])
        assert result["payload"]["event"] == "test"
        assert handler.events[-1] == "test"

        assert tools.update_webhook(webhook["id"], enabled=False)["webhook"]["enabled"] is False
        assert tools.list_webhook_deliveries(webhook["id"]) == {"deliveries": []}
        assert tools.cleanup_webhook_deliveries(1) == {"removed": 0}
        assert tools.delete_webhook(webhook["id"])["deleted"] == webhook["id"]
        assert tools.list_webhooks() == {"webhooks": []}

    def test_unknown_event_is_rejected(self, tools):
        """Test subscriptions to unknown events fail."""
        assert "error" in tools.create_webhook("bad", "https://example.com", ["task.exploded"])


class TestResources:
    """Test cases for MCP resources."""

    def test_project_resources(self, tools):
        """Test the project list and board resources."""
        assert tools.resource_projects() == "No projects yet."
        project = tools.create_project("Launch")["project"]
        tools.create_task(project["id"], "Write copy")

        assert "Launch" in tools.resource_projects()
        board = json.loads(tools.resource_project_tasks(project["id"]))
        assert [t["title"] for t in board["Planning"]] == ["Write copy"]
        assert board["Done"] == []
        assert json.loads(tools.resource_project(project["id"]))["name"] == "Launch"
        assert json.loads(tools.resource_project_epics(project["id"])) == []
        assert "error" in json.loads(tools.resource_project_tasks("missing"))
