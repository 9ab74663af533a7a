import pytest

from marketplace.errors import ApiError
from marketplace.events import EventPublisher
from marketplace.models import MenuRecord, RuntimeWeights, StoreRecord
from marketplace.orchestrator import (
    FallbackPolicy,
    MOCK_RESPONSE,
    OrchestrationPipeline,
    filter_hogun_titles,
    format_currency,
    merge_weights,
    normalize_orchestrate_payload,
    rank_candidates,
    recommend_options,
)
from marketplace.progression import ProgressionScheduler
from marketplace.search import SearchResult


def _result(menu_id, title, price=1000, score=0.0):
    return SearchResult(
        menu=MenuRecord.from_document({"id": menu_id, "title": title, "price": price}),
        store=StoreRecord.from_document({"id": "s"}),
        score=score,
    )


def _pipeline(store, fast_steps):
    publisher = EventPublisher()
    scheduler = ProgressionScheduler(store, publisher, fast_steps)
    return OrchestrationPipeline(store, publisher, scheduler, poll_interval=0.02, poll_timeout=2.0), scheduler


class TestPayload:
    def test_rejects_non_object_payload(self):
        with pytest.raises(ApiError) as exc_info:
            normalize_orchestrate_payload(["seoul"])
        assert exc_info.value.code == "orchestrate/invalid-payload"
        assert exc_info.value.details == {"step": "input", "cause": "non-object"}

    def test_normalizes_region_whitespace(self):
        request = normalize_orchestrate_payload({"region": "  seoul   gangnam ", "keyword": " ", "preferences": 3})
        assert request.region == "seoul_gangnam"
        assert request.keyword is None
        assert request.preferences is None


class TestRanking:
    def test_filters_hogun_titles(self):
        results = [
            _result("a", "x__hogun"),
            _result("b", "x_HOGUN"),
            _result("c", "x___hogun"),
            _result("d", "hogun-x"),
            _result("e", ""),
        ]
        assert [r.menu.id for r in filter_hogun_titles(results)] == ["a", "b", "c"]

    def test_preferences_override_stored_weights_field_by_field(self):
        stored = RuntimeWeights(price=0.3, rating=0.5, fee=0.2)
        merged = merge_weights(stored, {"price_weight": "0.9", "rating_weight": float("inf"), "fee_weight": None})
        assert merged == RuntimeWeights(price=0.9, rating=0.5, fee=0.2)
        assert merge_weights(stored, None) is stored

    def test_null_and_blank_preferences_keep_stored_weights(self):
        stored = RuntimeWeights(price=0.3, rating=0.5, fee=0.2)
        merged = merge_weights(stored, {"price_weight": None, "rating_weight": "", "fee_weight": 0})
        assert merged == RuntimeWeights(price=0.3, rating=0.5, fee=0.0)

    def test_rank_is_stable_for_ties(self):
        results = [_result("first", "a__hogun"), _result("second", "b__hogun"), _result("cheap", "c__hogun", 10)]
        ranked = rank_candidates(results, RuntimeWeights(price=1, rating=0, fee=0))
        assert [r.menu.id for r in ranked] == ["cheap", "first", "second"]


def test_recommend_options_picks_cheapest_per_group_up_to_two():
    menu = MenuRecord.from_document(
        {
            "id": "m",
            "option_groups": [
                {"options": []},
                {"options": [{"option_id": "big", "cost": 500}, {"value": 2, "amount": "100", "name": "작은"}]},
                {"options": [{"id": "a", "price": 300}, {"id": "b", "price": 300}]},
                {"options": [{"id": "never", "price": 0}]},
            ],
        }
    )
    picked = recommend_options(menu)
    assert [(o.id, o.price, o.label) for o in picked] == [("2", 100, "작은"), ("a", 300, None)]


def test_format_currency():
    assert format_currency(11500, "KRW") == "₩11,500"
    assert format_currency(12.5, "USD") == "US$12.50"
    assert format_currency(1000, "XYZ") == "1,000 XYZ"


def test_pipeline_orders_best_candidate_and_summarizes(run, seed, marketplace_docs, fast_steps):
    seed(marketplace_docs)

    async def scenario(store):
        pipeline, scheduler = _pipeline(store, fast_steps)
        request = normalize_orchestrate_payload({"region": "seoul gangnam", "keyword": "치킨"})
        try:
            response = await pipeline.execute(request)
        finally:
            await scheduler.shutdown()
        orders = await store.scan("orders")
        return response, orders

    response, orders = run(scenario)

    assert response["store"] == "호건치킨"
    assert response["menu"] == "후라이드 치킨"
    assert response["price_total"] == 11500
    assert response["eta_minutes"] == 1
    assert response["summary"] == [
        "호건치킨에서 후라이드 치킨를 자동으로 선택해 주문했습니다.",
        "총 결제 금액은 ₩11,500이며 예상 도착 시간은 약 1분입니다.",
        "추천 옵션: 레귤러, 콜라.",
    ]
    assert len(orders) == 1
    assert orders[0].data["user_id"] == "runtime-orchestrator"
    assert orders[0].data["status"] == "completed"


def test_pipeline_retries_without_region(run, seed, marketplace_docs, fast_steps):
    seed(marketplace_docs)

    async def scenario(store):
        pipeline, scheduler = _pipeline(store, fast_steps)
        try:
            return await pipeline.execute(normalize_orchestrate_payload({"region": "jeju"}))
        finally:
            await scheduler.shutdown()

    assert run(scenario)["menu"] == "후라이드 치킨"


def test_no_candidates_fails_before_creating_an_order(run, seed, fast_steps):
    seed(
        {
            ("stores", "store-1"): {"name": "A", "region": "r", "status": "open", "delivery": {"available": True}},
            ("menus", "menu-1"): {"store_id": "store-1", "name": "plain", "title": "plain", "stock": 3},
        }
    )

    async def scenario(store):
        pipeline, _ = _pipeline(store, fast_steps)
        with pytest.raises(ApiError) as exc_info:
            await pipeline.execute(normalize_orchestrate_payload({"region": "r"}))
        return exc_info.value, await store.scan("orders")

    error, orders = run(scenario)
    assert error.code == "orchestrate/no-candidates"
    assert error.status == 404
    assert orders == []


def test_order_step_errors_are_tagged(run, seed, marketplace_docs, fast_steps):
    docs = dict(marketplace_docs)
    docs[("stores", "store-1")] = {**docs[("stores", "store-1")], "delivery": {"available": False}}
    seed(docs)

    async def scenario(store):
        pipeline, _ = _pipeline(store, fast_steps)
        with pytest.raises(ApiError) as exc_info:
            await pipeline.execute(normalize_orchestrate_payload({}))
        return exc_info.value

    error = run(scenario)
    assert error.code == "E03"
    assert error.status == 409
    assert error.details["step"] == "order"
    assert "alternatives" in error.details


def test_cancelled_order_stops_polling(run, seed, marketplace_docs):
    seed(marketplace_docs)

    async def scenario(store):
        pipeline, scheduler = _pipeline(store, ())
        original = pipeline._place_order

        async def place_and_cancel(menu, recommended):
            order = await original(menu, recommended)
            await store.set("orders", order["order_id"], {"status": "cancelled"}, merge=True)
            return order

        pipeline._place_order = place_and_cancel
        with pytest.raises(ApiError) as exc_info:
            await pipeline.execute(normalize_orchestrate_payload({}))
        return exc_info.value

    error = run(scenario)
    assert error.code == "orchestrate/order-cancelled"
    assert error.status == 409


def test_polling_times_out(run, seed, marketplace_docs):
    seed(marketplace_docs)

    async def scenario(store):
        publisher = EventPublisher()
        scheduler = ProgressionScheduler(store, publisher, ())
        pipeline = OrchestrationPipeline(store, publisher, scheduler, poll_interval=0.01, poll_timeout=0.05)
        with pytest.raises(ApiError) as exc_info:
            await pipeline.execute(normalize_orchestrate_payload({}))
        return exc_info.value

    error = run(scenario)
    assert error.code == "orchestrate/order-timeout"
    assert error.status == 504
    assert error.details["step"] == "order-status"


def test_order_summary_coerces_stored_fields(run, seed, fast_steps):
    seed({("orders", "o1"): {"status": "completed", "total_price": "11500", "eta_minutes": None}})

    async def scenario(store):
        pipeline, _ = _pipeline(store, fast_steps)
        summary = await pipeline._load_order_summary("o1")
        with pytest.raises(ApiError) as exc_info:
            await pipeline._load_order_summary("ghost")
        return summary, exc_info.value

    summary, error = run(scenario)
    assert summary == {"total_price": 11500, "eta_minutes": 0}
    assert error.code == "order/not-found"


class TestFallbackPolicy:
    def test_failures_become_the_mock_response(self, run, fast_steps):
        async def scenario(store):
            pipeline, _ = _pipeline(store, fast_steps)
            return await FallbackPolicy(pipeline).run({"keyword": "없는메뉴"})

        response = run(scenario)
        assert response == MOCK_RESPONSE
        assert "모의" in response["menu"]

    def test_invalid_payload_is_not_masked(self, run, fast_steps):
        async def scenario(store):
            pipeline, _ = _pipeline(store, fast_steps)
            with pytest.raises(ApiError) as exc_info:
                await FallbackPolicy(pipeline).run("not-an-object")
            return exc_info.value

        assert run(scenario).code == "orchestrate/invalid-payload"
