import pytest


def test_set_get_and_merge(run):
    async def scenario(store):
        await store.set("stores", "s1", {"name": "A", "delivery": {"available": True, "base_fee": 1000}})
        await store.set("stores", "s1", {"delivery": {"base_fee": 2000}}, merge=True)
        return await store.get("stores", "s1"), await store.get("stores", "missing")

    found, missing = run(scenario)

    assert found.exists
    assert found.data["name"] == "A"
    assert found.data["delivery"] == {"available": True, "base_fee": 2000}
    assert found.data["created_at"] and found.data["updated_at"]
    assert found.to_dict()["id"] == "s1"
    assert not missing.exists


def test_add_assigns_ids_and_query_filters_by_field(run):
    async def scenario(store):
        first = await store.add("menus", {"store_id": "s1", "name": "a"})
        second = await store.add("menus", {"store_id": "s1", "name": "b"})
        await store.add("menus", {"store_id": "s2", "name": "c"})
        rows = await store.query("menus", where=("store_id", "s1"), order_by="created_at", descending=True)
        return first, second, rows

    first, second, rows = run(scenario)

    assert first != second
    assert {row.id for row in rows} == {first, second}
    assert all(row.data["store_id"] == "s1" for row in rows)


def test_query_rejects_unsafe_field_names(run):
    with pytest.raises(ValueError):
        run(lambda store: store.query("menus", where=("store_id); DROP", "x")))


def test_transaction_update_replaces_top_level_fields(run):
    async def scenario(store):
        await store.set("orders", "o1", {"status": "pending", "total_price": 100})
        async with store.transaction() as tx:
            snapshot = await tx.get("orders", "o1")
            await tx.update("orders", "o1", {"status": "confirmed"})
        after = await store.get("orders", "o1")
        return snapshot, after

    before, after = run(scenario)

    assert before.data["status"] == "pending"
    assert after.data == {**after.data, "status": "confirmed", "total_price": 100}


def test_transaction_rolls_back_on_error(run):
    async def scenario(store):
        await store.set("orders", "o1", {"status": "pending"})
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await tx.update("orders", "o1", {"status": "confirmed"})
                raise RuntimeError("boom")
        return await store.get("orders", "o1")

    assert run(scenario).data["status"] == "pending"


def test_delete_and_scan(run):
    async def scenario(store):
        await store.set("stores", "a", {"name": "A"})
        await store.set("stores", "b", {"name": "B"})
        await store.delete("stores", "a")
        return await store.scan("stores", limit=10)

    rows = run(scenario)
    assert [row.id for row in rows] == ["b"]
