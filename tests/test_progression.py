import asyncio

from marketplace import commands
from marketplace.aggregate import OrderStatusMachine, ProgressionStep
from marketplace.events import EventPublisher
from marketplace.models import OrderRecord
from marketplace.progression import ProgressionScheduler

STEPS = (
    ProgressionStep("confirmed", 0.05),
    ProgressionStep("preparing", 0.1),
    ProgressionStep("completed", 0.15),
)


def _machine(data):
    return OrderStatusMachine(OrderRecord.from_document({"id": "o1", **data}))


class TestOrderStatusMachine:
    def test_advances_forward_and_appends_timeline(self):
        machine = _machine({"status": "pending", "timeline": [{"status": "pending", "at": "t0"}]})
        updates = machine.advance("confirmed", "t1")
        assert updates == {
            "status": "confirmed",
            "timeline": [{"status": "pending", "at": "t0"}, {"status": "confirmed", "at": "t1"}],
        }

    def test_ignores_backward_and_repeated_targets(self):
        machine = _machine({"status": "preparing", "timeline": []})
        assert machine.advance("confirmed", "t") is None
        assert machine.advance("preparing", "t") is None

    def test_cancelled_is_terminal(self):
        machine = _machine({"status": "cancelled"})
        assert machine.advance("completed", "t") is None

    def test_missing_status_counts_as_pending(self):
        machine = _machine({})
        assert machine.can_advance_to("confirmed")

    def test_malformed_fields_are_coerced_at_the_boundary(self):
        machine = _machine({"status": 3, "timeline": ["bad", {"status": "pending", "at": "t0"}]})
        assert machine.status == "pending"
        assert machine.advance("confirmed", "t1") == {
            "status": "confirmed",
            "timeline": [{"status": "pending", "at": "t0"}, {"status": "confirmed", "at": "t1"}],
        }


def test_advance_is_idempotent_and_order_insensitive(run):
    async def scenario(store):
        await store.set("orders", "o1", {"status": "pending", "timeline": [{"status": "pending", "at": "t0"}]})
        publisher = EventPublisher()
        results = [
            await commands.advance_order_status(store, publisher, "o1", "confirmed"),
            await commands.advance_order_status(store, publisher, "o1", "confirmed"),
            await commands.advance_order_status(store, publisher, "o1", "completed"),
            await commands.advance_order_status(store, publisher, "o1", "preparing"),
            await commands.advance_order_status(store, publisher, "missing", "confirmed"),
        ]
        return results, await store.get("orders", "o1")

    results, order = run(scenario)

    assert results == [True, False, True, False, False]
    assert order.data["status"] == "completed"
    assert [entry["status"] for entry in order.data["timeline"]] == ["pending", "confirmed", "completed"]


def test_cancelled_orders_are_never_advanced(run):
    async def scenario(store):
        await store.set("orders", "o1", {"status": "cancelled", "timeline": []})
        scheduler = ProgressionScheduler(store, steps=STEPS)
        scheduler.schedule("o1")
        await asyncio.sleep(0.3)
        return await store.get("orders", "o1")

    order = run(scenario)
    assert order.data["status"] == "cancelled"
    assert order.data["timeline"] == []


def test_scheduler_walks_order_to_completed(run):
    async def scenario(store):
        await store.set("orders", "o1", {"status": "pending", "timeline": [{"status": "pending", "at": "t0"}]})
        scheduler = ProgressionScheduler(store, steps=STEPS)
        first = scheduler.schedule("o1")
        second = scheduler.schedule("o1")
        await asyncio.sleep(0.3)
        return first, second, scheduler.is_scheduled("o1"), await store.get("orders", "o1")

    first, second, still_scheduled, order = run(scenario)

    assert first is True
    assert second is False
    assert still_scheduled is False
    assert order.data["status"] == "completed"
    assert [entry["status"] for entry in order.data["timeline"]] == [
        "pending",
        "confirmed",
        "preparing",
        "completed",
    ]


def test_shutdown_cancels_pending_steps(run):
    async def scenario(store):
        await store.set("orders", "o1", {"status": "pending", "timeline": []})
        scheduler = ProgressionScheduler(store, steps=STEPS)
        scheduler.schedule("o1")
        await scheduler.shutdown()
        await asyncio.sleep(0.3)
        return await store.get("orders", "o1")

    assert run(scenario).data["status"] == "pending"


def test_failed_step_is_logged_not_raised(run, monkeypatch, caplog):
    async def broken(*args):
        raise RuntimeError("storage down")

    monkeypatch.setattr(commands, "advance_order_status", broken)

    async def scenario(store):
        scheduler = ProgressionScheduler(store, steps=STEPS)
        return await scheduler.run_step("o1", "confirmed")

    assert run(scenario) is False
    assert "Failed to update order o1 to confirmed" in caplog.text
