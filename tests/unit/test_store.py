"""Unit tests for FluxStore.

This module tests CRUD, cascade rules, uniqueness checks, soft deletes and
the unit-of-work rollback behaviour of the entity store.
"""

from datetime import timedelta

import pytest

from flux.adapters import MemoryAdapter
from flux.errors import ConflictError, InvalidTransitionError, PersistenceError, ValidationError
from flux.models import CustomerFilters, ProductFilters, TaskFilters
from flux.store import FluxStore


class FailingAdapter(MemoryAdapter):
    """Memory adapter whose writes can be switched off."""

    def __init__(self):
        super().__init__()
        self.fail = False

    def write(self):
        if self.fail:
            raise PersistenceError("disk full")
        return super().write()


def product_data(**overrides):
    data = {"sku": "OIL-5W30", "name": "Engine Oil 5W-30", "category": "Oils", "sell_price": 45.0}
    data.update(overrides)
    return data


class TestProjects:
    """Test cases for project CRUD and cascades."""

    def test_create_and_get(self, store, adapter):
        """Test a created project is retrievable and persisted."""
        project = store.create_project("Website", "Relaunch")
        assert store.get_project(project.id).name == "Website"
        assert adapter.persisted["projects"][0]["id"] == project.id

    def test_name_is_required(self, store):
        """Test a blank name is rejected."""
        with pytest.raises(ValidationError):
            store.create_project("   ")

    def test_update_rejects_unknown_and_immutable_fields(self, store):
        """Test only mutable fields can be updated."""
        project = store.create_project("Website")
        with pytest.raises(ValidationError):
            store.update_project(project.id, {"id": "other"})
        with pytest.raises(ValidationError):
            store.update_project(project.id, {"colour": "red"})

    def test_update_missing_returns_none(self, store):
        """Test updating an unknown project returns None."""
        assert store.update_project("missing", {"name": "x"}) is None

    def test_delete_cascades(self, store):
        """Test deleting a project removes its epics and tasks only."""
        doomed = store.create_project("Doomed")
        kept = store.create_project("Kept")
        store.create_epic(doomed.id, "Epic")
        store.create_task(doomed.id, "Task")
        survivor = store.create_task(kept.id, "Survivor")

        assert store.delete_project(doomed.id) is True
        assert store.get_project(doomed.id) is None
        assert store.list_epics(doomed.id) == []
        assert store.list_tasks(doomed.id, TaskFilters(include_archived=True)) == []
        assert [t.id for t in store.list_all_tasks()] == [survivor.id]

    def test_delete_missing(self, store):
        """Test deleting an unknown project returns False."""
        assert store.delete_project("missing") is False

    def test_stats_ignore_archived(self, store):
        """Test project stats count live tasks only."""
        project = store.create_project("Website")
        done = store.create_task(project.id, "Done")
        store.update_task(done.id, {"status": "done"})
        store.create_task(project.id, "Open")
        archived = store.create_task(project.id, "Old")
        store.update_task(archived.id, {"status": "done", "archived": True})
        assert store.project_stats(project.id) == {"total": 2, "done": 1}


class TestEpicsAndTasks:
    """Test cases for epics, tasks and transitions."""

    def test_create_epic_requires_project(self, store):
        """Test epics cannot be created for an unknown project."""
        with pytest.raises(ValidationError):
            store.create_epic("missing", "Epic")

    def test_create_task_requires_project(self, store):
        """Test tasks cannot be created for an unknown project."""
        with pytest.raises(ValidationError):
            store.create_task("missing", "Task")

    def test_new_task_defaults(self, store):
        """Test tasks start in planning, unarchived."""
        project = store.create_project("Website")
        task = store.create_task(project.id, "Design", depends_on=["a", "a", "b"])
        assert task.status == "planning"
        assert task.archived is False
        assert task.depends_on == ["a", "b"]

    def test_unknown_agent_is_rejected(self, store):
        """Test the agent must be a known name."""
        project = store.create_project("Website")
        with pytest.raises(ValidationError):
            store.create_task(project.id, "Design", agent="copilot")

    def test_planning_to_in_progress_is_rejected(self, store):
        """Test the planning to in_progress move raises and leaves the task alone."""
        project = store.create_project("Website")
        task = store.create_task(project.id, "Design")
        with pytest.raises(InvalidTransitionError) as excinfo:
            store.move_task_status(task.id, "in_progress")
        assert "todo" in str(excinfo.value)
        assert store.get_task(task.id).status == "planning"

    def test_status_path_through_todo(self, store):
        """Test planning, todo, in_progress and done are reachable in order."""
        project = store.create_project("Website")
        task = store.create_task(project.id, "Design")
        for status in ("todo", "in_progress", "done"):
            assert store.move_task_status(task.id, status).status == status

    def test_invalid_status_value(self, store):
        """Test statuses outside the board columns are rejected."""
        project = store.create_project("Website")
        task = store.create_task(project.id, "Design")
        with pytest.raises(ValidationError):
            store.move_task_status(task.id, "blocked")

    def test_task_cannot_depend_on_itself(self, store):
        """Test self-dependencies are rejected on update."""
        project = store.create_project("Website")
        task = store.create_task(project.id, "Design")
        with pytest.raises(ValidationError):
            store.update_task(task.id, {"depends_on": [task.id]})

    def test_project_id_is_immutable(self, store):
        """Test tasks cannot move between projects."""
        project = store.create_project("Website")
        task = store.create_task(project.id, "Design")
        with pytest.raises(ValidationError):
            store.update_task(task.id, {"project_id": "other"})

    def test_delete_epic_detaches_tasks(self, store):
        """Test tasks survive their epic and lose the reference."""
        project = store.create_project("Website")
        epic = store.create_epic(project.id, "Launch")
        task = store.create_task(project.id, "Design", epic_id=epic.id)
        assert store.delete_epic(epic.id) is True
        assert store.get_task(task.id).epic_id is None

    def test_delete_task_prunes_dependencies(self, store):
        """Test deleting a task removes it from other tasks' depends_on."""
        project = store.create_project("Website")
        first = store.create_task(project.id, "First")
        second = store.create_task(project.id, "Second", depends_on=[first.id])
        assert store.delete_task(first.id) is True
        assert store.get_task(second.id).depends_on == []

    def test_list_tasks_filters(self, store):
        """Test list filters by epic and hides archived tasks."""
        project = store.create_project("Website")
        epic = store.create_epic(project.id, "Launch")
        in_epic = store.create_task(project.id, "In epic", epic_id=epic.id)
        loose = store.create_task(project.id, "Loose")
        store.update_task(loose.id, {"archived": True})

        assert [t.id for t in store.list_tasks(project.id, TaskFilters(epic_id=epic.id))] == [in_epic.id]
        assert [t.id for t in store.list_tasks(project.id)] == [in_epic.id]
        assert len(store.list_tasks(project.id, TaskFilters(include_archived=True))) == 2
        assert [t.id for t in store.tasks_by_epic(project.id, None)] == [loose.id]
        assert [t.id for t in store.tasks_by_status(project.id, "planning")] == [in_epic.id, loose.id]


class TestProducts:
    """Test cases for the product catalog."""

    def test_create_stamps_timestamps(self, store, clock):
        """Test created products carry the clock time and default currency."""
        product = store.create_product(product_data())
        assert product.created_at == "2025-03-01T09:00:00.000Z"
        assert product.updated_at == product.created_at
        assert product.currency == "AUD"
        assert product.is_active is True

    @pytest.mark.parametrize("missing", ["sku", "name", "category"])
    def test_required_fields(self, store, missing):
        """Test sku, name and category are required."""
        data = product_data()
        del data[missing]
        with pytest.raises(ValidationError):
            store.create_product(data)

    def test_negative_price_is_rejected(self, store):
        """Test prices must not be negative."""
        with pytest.raises(ValidationError):
            store.create_product(product_data(sell_price=-1))

    def test_duplicate_sku_conflicts(self, store):
        """Test SKUs are unique regardless of case."""
        store.create_product(product_data())
        with pytest.raises(ConflictError):
            store.create_product(product_data(sku="oil-5w30", name="Other"))
        assert len(store.list_products()) == 1

    def test_update_to_taken_sku_conflicts(self, store):
        """Test an update cannot steal another product's SKU."""
        store.create_product(product_data())
        other = store.create_product(product_data(sku="OIL-10W40"))
        with pytest.raises(ConflictError):
            store.update_product(other.id, {"sku": "OIL-5W30"})
        assert store.get_product(other.id).sku == "OIL-10W40"

    def test_update_refreshes_updated_at(self, store, clock):
        """Test updates move updated_at but keep created_at."""
        product = store.create_product(product_data())
        clock.advance(hours=1)
        updated = store.update_product(product.id, {"sell_price": 49.0})
        assert updated.sell_price == 49.0
        assert updated.updated_at == "2025-03-01T10:00:00.000Z"
        assert updated.created_at == "2025-03-01T09:00:00.000Z"

    def test_soft_delete(self, store):
        """Test soft-deleted products stay retrievable but inactive."""
        product = store.create_product(product_data())
        assert store.delete_product(product.id) is True
        assert store.get_product(product.id).is_active is False
        assert store.list_products(ProductFilters(is_active=True)) == []
        assert len(store.list_products()) == 1

    def test_hard_delete(self, store):
        """Test hard delete removes the record."""
        product = store.create_product(product_data())
        assert store.hard_delete_product(product.id) is True
        assert store.get_product(product.id) is None
        assert store.hard_delete_product(product.id) is False

    def test_categories_brands_and_search(self, store):
        """Test distinct sorted categories and brands, and search."""
        store.create_product(product_data(brand="Penrite"))
        store.create_product(product_data(sku="BRK-1", name="Pads", category="Brakes", brand="Bendix",
                                          fitment=["Ranger PX"]))
        assert store.product_categories() == ["Brakes", "Oils"]
        assert store.product_brands() == ["Bendix", "Penrite"]
        assert [p.sku for p in store.search_products("ranger")] == ["BRK-1"]
        assert store.get_product_by_sku("brk-1").name == "Pads"


class TestCustomers:
    """Test cases for the customer registry."""

    def test_create_with_address(self, store):
        """Test customers accept a nested address mapping."""
        customer = store.create_customer({
            "type": "business",
            "name": "Acme Pty Ltd",
            "email": "sales@acme.test",
            "address": {"city": "Perth", "state": "WA"},
            "tags": ["fleet"],
        })
        assert customer.address.city == "Perth"
        assert store.get_customer_by_email("SALES@acme.test").id == customer.id

    def test_invalid_type(self, store):
        """Test the customer type must be individual or business."""
        with pytest.raises(ValidationError):
            store.create_customer({"type": "government", "name": "Council"})

    def test_duplicate_email_conflicts(self, store):
        """Test emails are unique when present."""
        store.create_customer({"type": "individual", "name": "Jane", "email": "jane@example.com"})
        with pytest.raises(ConflictError):
            store.create_customer({"type": "individual", "name": "Janet", "email": "JANE@example.com"})

    def test_customers_without_email_do_not_conflict(self, store):
        """Test the uniqueness check skips missing emails."""
        store.create_customer({"type": "individual", "name": "Walk-in"})
        store.create_customer({"type": "individual", "name": "Walk-in 2"})
        assert len(store.list_customers()) == 2

    def test_soft_delete_and_filters(self, store):
        """Test soft delete and tag/source listings."""
        customer = store.create_customer({
            "type": "individual", "name": "Jane", "tags": ["vip", "fleet"], "source": "Referral",
        })
        store.create_customer({"type": "individual", "name": "Bob", "tags": ["fleet"], "source": "Web"})
        assert store.delete_customer(customer.id) is True
        assert store.get_customer(customer.id).is_active is False
        assert [c.name for c in store.list_customers(CustomerFilters(is_active=True))] == ["Bob"]
        assert store.customer_tags() == ["fleet", "vip"]
        assert store.customer_sources() == ["Referral", "Web"]

    def test_hard_delete(self, store):
        """Test hard delete removes the record."""
        customer = store.create_customer({"type": "individual", "name": "Jane"})
        assert store.hard_delete_customer(customer.id) is True
        assert store.get_customer(customer.id) is None


class TestWebhooks:
    """Test cases for webhooks and delivery records."""

    def test_create_validates_events_and_url(self, store):
        """Test unknown events and non-http urls are rejected."""
        with pytest.raises(ValidationError):
            store.create_webhook("hook", "https://example.com", ["task.exploded"])
        with pytest.raises(ValidationError):
            store.create_webhook("hook", "ftp://example.com", ["task.created"])

    def test_webhooks_for_project(self, store):
        """Test scoped and unscoped webhooks are both returned for a project."""
        global_hook = store.create_webhook("all", "https://example.com/a", ["task.created"])
        scoped = store.create_webhook("p1", "https://example.com/b", ["task.created"], project_id="p1")
        store.create_webhook("p2", "https://example.com/c", ["task.created"], project_id="p2")
        assert {w.id for w in store.webhooks_for_project("p1")} == {global_hook.id, scoped.id}

    def test_delete_removes_deliveries(self, store):
        """Test deleting a webhook drops its delivery history."""
        hook = store.create_webhook("all", "https://example.com/a", ["task.created"])
        store.create_webhook_delivery(hook.id, "task.created", {"event": "task.created"})
        assert store.delete_webhook(hook.id) is True
        assert store.list_webhook_deliveries() == []

    def test_deliveries_newest_first_with_limit(self, store, clock):
        """Test delivery listing order and limit."""
        hook = store.create_webhook("all", "https://example.com/a", ["task.created"])
        first = store.create_webhook_delivery(hook.id, "task.created", {})
        clock.advance(minutes=1)
        second = store.create_webhook_delivery(hook.id, "task.created", {})
        assert [d.id for d in store.list_webhook_deliveries(hook.id)] == [second.id, first.id]
        assert [d.id for d in store.list_webhook_deliveries(hook.id, limit=1)] == [second.id]

    def test_deliveries_created_together_keep_insertion_order(self, store):
        """Test deliveries sharing a timestamp list the later one first."""
        hook = store.create_webhook("all", "https://example.com/a", ["task.created"])
        first = store.create_webhook_delivery(hook.id, "task.created", {})
        second = store.create_webhook_delivery(hook.id, "task.created", {})
        third = store.create_webhook_delivery(hook.id, "task.created", {})
        assert first.created_at == third.created_at
        assert [d.id for d in store.list_webhook_deliveries(hook.id)] == [third.id, second.id, first.id]

    def test_update_delivery_status_is_checked(self, store):
        """Test delivery status must be pending, success or failed."""
        hook = store.create_webhook("all", "https://example.com/a", ["task.created"])
        delivery = store.create_webhook_delivery(hook.id, "task.created", {})
        with pytest.raises(ValidationError):
            store.update_webhook_delivery(delivery.id, {"status": "lost"})
        assert store.update_webhook_delivery(delivery.id, {"status": "success"}).status == "success"

    def test_cleanup_old_deliveries(self, store, clock):
        """Test deliveries older than the cutoff are removed."""
        hook = store.create_webhook("all", "https://example.com/a", ["task.created"])
        store.create_webhook_delivery(hook.id, "task.created", {})
        clock.advance(days=8)
        recent = store.create_webhook_delivery(hook.id, "task.created", {})
        assert store.cleanup_old_deliveries(timedelta(days=7)) == 1
        assert [d.id for d in store.list_webhook_deliveries()] == [recent.id]
        assert store.cleanup_old_deliveries(timedelta(days=7)) == 0


class TestUnitOfWork:
    """Test cases for transactions, ids and rollback."""

    def test_failed_write_rolls_back(self, clock):
        """Test state is restored when the adapter write fails."""
        adapter = FailingAdapter()
        store = FluxStore(adapter, clock=clock)
        store.init()
        project = store.create_project("Website")

        adapter.fail = True
        with pytest.raises(PersistenceError):
            store.create_task(project.id, "Lost")
        with pytest.raises(PersistenceError):
            store.update_project(project.id, {"name": "Renamed"})

        assert store.list_all_tasks() == []
        assert store.get_project(project.id).name == "Website"

    def test_failing_body_rolls_back(self, store):
        """Test an exception inside a transaction discards its changes."""
        project = store.create_project("Website")
        with pytest.raises(RuntimeError):
            with store.transaction("boom"):
                store.data.projects.clear()
                store.mark_changed()
                raise RuntimeError("boom")
        assert store.get_project(project.id) is not None

    def test_nested_transactions_write_once(self, store, adapter):
        """Test inner transactions join the outer one."""
        before = adapter.write_count
        with store.transaction("outer"):
            store.create_project("One")
            store.create_project("Two")
        assert adapter.write_count == before + 1

    def test_read_only_transaction_does_not_write(self, store, adapter):
        """Test transactions without changes skip the adapter."""
        before = adapter.write_count
        with store.transaction("noop"):
            pass
        assert adapter.write_count == before

    def test_rollback_only_restores_named_collections(self, clock):
        """Test a failed project write leaves untouched collections in place."""
        adapter = FailingAdapter()
        store = FluxStore(adapter, clock=clock)
        store.init()
        hook = store.create_webhook("all", "https://example.com/a", ["task.created"])
        store.create_webhook_delivery(hook.id, "task.created", {})
        deliveries = store.data.webhook_deliveries

        adapter.fail = True
        with pytest.raises(PersistenceError):
            store.create_project("Lost")

        assert store.list_projects() == []
        assert store.data.webhook_deliveries is deliveries

    def test_nested_transaction_widens_the_rollback(self, store):
        """Test collections first touched by an inner transaction are restored too."""
        project = store.create_project("Website")
        with pytest.raises(RuntimeError):
            with store.transaction("outer", "projects"):
                store.update_project(project.id, {"name": "Renamed"})
                store.create_product(product_data())
                raise RuntimeError("boom")
        assert store.get_project(project.id).name == "Website"
        assert store.list_products() == []

    def test_ids_are_never_reused(self, adapter, clock):
        """Test new ids skip every id already in the store."""
        ids = iter(["aaaaaaa", "aaaaaaa", "bbbbbbb"])
        store = FluxStore(adapter, clock=clock, id_factory=lambda: next(ids))
        store.init()
        first = store.create_project("One")
        second = store.create_project("Two")
        assert (first.id, second.id) == ("aaaaaaa", "bbbbbbb")

    def test_init_reads_persisted_document(self, clock):
        """Test a fresh store hydrates what a previous one wrote."""
        adapter = MemoryAdapter()
        FluxStore(adapter, clock=clock).init()
        writer = FluxStore(adapter, clock=clock)
        writer.init()
        writer.create_project("Persisted")

        reader = FluxStore(MemoryAdapter(initial=adapter.persisted), clock=clock)
        reader.init()
        assert [p.name for p in reader.list_projects()] == ["Persisted"]
