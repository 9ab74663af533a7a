"""
Marketplace — 自動注文オーケストレーター

検索 → ランキング → オプション選択 → 注文作成 → 完了待ち → 要約 を
1 本のフローとして制御する。

  ┌─────────────────────────────────────────────────────────┐
  │  1. 地域 + キーワードで上位 12 件を検索し __hogun タイトルに絞る │
  │     └─ 0 件かつ地域指定あり → 地域なしで再検索                │
  │  2. 重み (保存値をリクエストで上書き) で再スコアして 1 位を選ぶ  │
  │  3. オプショングループごとに最安オプションを推奨 (最大 2 件)     │
  │  4. システムユーザーで 1 品注文を作成                          │
  │  5. 5 秒間隔・最大 60 秒で completed を待つ                    │
  │  6. 保存済み注文から金額と ETA を読み、要約文を作る             │
  └─────────────────────────────────────────────────────────┘

失敗時は FallbackPolicy が固定のモック応答に差し替える (デモ用に常に成功させる方針)。
構造的に不正なペイロード (orchestrate/invalid-payload) だけはそのまま返す。
"""

import asyncio
import logging
import math
import re
from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from . import commands, queries, search
from .aggregate import CANCELLED, COMPLETED
from .documents import DocumentStore
from .errors import ApiError
from .events import EventPublisher
from .models import MenuOption, MenuRecord, OrderRecord, RuntimeWeights, StoreRecord
from .search import SearchResult
from .title import format_number

logger = logging.getLogger(__name__)

ORCHESTRATOR_USER_ID = "runtime-orchestrator"
CANDIDATE_LIMIT = 12
MAX_RECOMMENDED_OPTIONS = 2

_HOGUN_TITLE = re.compile(r"_{1,2}hogun$", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


class OrchestrateRequest(BaseModel):
    region: str | None = None
    keyword: str | None = None
    preferences: dict | None = None


def normalize_orchestrate_payload(payload) -> OrchestrateRequest:
    if not isinstance(payload, dict):
        raise ApiError(
            "orchestrate/invalid-payload",
            "요청 본문이 올바르지 않습니다.",
            "JSON 객체 형태로 region, keyword를 전달해주세요.",
            {"step": "input", "cause": "non-object"},
        )

    region = payload.get("region")
    keyword = payload.get("keyword")
    preferences = payload.get("preferences")

    region = region.strip() or None if isinstance(region, str) else None
    keyword = keyword.strip() or None if isinstance(keyword, str) else None

    return OrchestrateRequest(
        region=normalize_region(region),
        keyword=keyword,
        preferences=preferences if isinstance(preferences, dict) else None,
    )


def normalize_region(region: str | None) -> str | None:
    if not region:
        return None
    return _WHITESPACE.sub("_", region).strip()


def filter_hogun_titles(results: list[SearchResult]) -> list[SearchResult]:
    return [r for r in results if r.menu.title and _HOGUN_TITLE.search(r.menu.title)]


def merge_weights(stored: RuntimeWeights, preferences: dict | None) -> RuntimeWeights:
    """
    リクエストの重みで保存値を項目ごとに上書きする。

    有限数に変換できない値 (null や空文字を含む) は保存値のまま。0 は明示的な上書き。
    """
    if not preferences:
        return stored

    def pick(key: str, fallback: float) -> float:
        value = preferences.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            return fallback
        try:
            number = float(value)
        except ValueError:
            return fallback
        return number if math.isfinite(number) else fallback

    return RuntimeWeights(
        price=pick("price_weight", stored.price),
        rating=pick("rating_weight", stored.rating),
        fee=pick("fee_weight", stored.fee),
    )


def rank_candidates(results: list[SearchResult], weights: RuntimeWeights) -> list[SearchResult]:
    """再スコアして降順に並べる。同点は元の順序を保つ (安定ソート)。"""
    ranked = [
        r.model_copy(update={"score": search.calculate_weighted_score(r.menu, r.store, weights)})
        for r in results
    ]
    ranked.sort(key=lambda r: r.score, reverse=True)
    return ranked


def recommend_options(menu: MenuRecord) -> list[MenuOption]:
    selections: list[MenuOption] = []
    for options in menu.option_candidates():
        if not options:
            continue
        # min は同値なら先頭を返す
        selections.append(min(options, key=lambda option: option.price))
        if len(selections) >= MAX_RECOMMENDED_OPTIONS:
            break
    return selections


_CURRENCY_FORMATS = {
    "KRW": ("₩", 0),
    "JPY": ("JP¥", 0),
    "USD": ("US$", 2),
    "EUR": ("€", 2),
    "CNY": ("CN¥", 2),
}


def format_currency(amount: float, currency: str) -> str:
    symbol, decimals = _CURRENCY_FORMATS.get(currency.upper(), (None, 0))
    if symbol is None:
        return f"{amount:,} {currency}"
    return f"{symbol}{amount:,.{decimals}f}"


def build_summary_response(
    menu: MenuRecord,
    store: StoreRecord,
    total_price: float,
    eta_minutes: float,
    recommended: list[MenuOption],
) -> dict:
    store_name = store.name or store.id or "선택 매장"
    menu_name = menu.display_name or "추천 메뉴"

    sentences = [
        f"{store_name}에서 {menu_name}를 자동으로 선택해 주문했습니다.",
        f"총 결제 금액은 {format_currency(total_price, menu.currency)}이며 "
        f"예상 도착 시간은 약 {format_number(eta_minutes)}분입니다.",
    ]
    if recommended:
        option_text = ", ".join(option.label or option.id for option in recommended)
        sentences.append(f"추천 옵션: {option_text}.")

    return {
        "store": store_name,
        "menu": menu_name,
        "price_total": total_price,
        "eta_minutes": eta_minutes,
        "summary": sentences[:3],
    }


MOCK_RESPONSE = {
    "store": "모의 호건 매장",
    "menu": "모의 추천 메뉴",
    "price_total": 15000,
    "eta_minutes": 30,
    "summary": [
        "모의 호건 매장에서 모의 추천 메뉴를 자동으로 선택해 주문했습니다.",
        "총 결제 금액은 ₩15,000이며 예상 도착 시간은 약 30분입니다.",
    ],
}


def mock_response() -> dict:
    return {**MOCK_RESPONSE, "summary": list(MOCK_RESPONSE["summary"])}


class OrchestrationPipeline:
    """自動注文フローのオーケストレーター"""

    def __init__(
        self,
        store: DocumentStore,
        publisher: EventPublisher,
        scheduler,
        poll_interval: float = 5.0,
        poll_timeout: float = 60.0,
    ):
        self.store = store
        self.publisher = publisher
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout

    async def execute(self, request: OrchestrateRequest) -> dict:
        step_log: list[dict] = []

        def record(step: str, **extra) -> None:
            step_log.append(
                {"step": step, "timestamp": datetime.now(timezone.utc).isoformat(), **extra}
            )

        # ── Step 1: 候補を検索 ──────────────────────
        candidates = await self._find_candidates(request.region, request.keyword)
        record("search", candidates=len(candidates))

        # ── Step 2: 重み付けして 1 位を選ぶ ─────────
        stored = await search.load_runtime_weights(self.store)
        weights = merge_weights(stored, request.preferences)
        choice = rank_candidates(candidates, weights)[0]
        record("rank", menu_id=choice.menu.id, score=choice.score)

        # ── Step 3: 推奨オプション ──────────────────
        context = await queries.fetch_menu_with_store(self.store, choice.menu.id)
        recommended = recommend_options(context.menu)

        # ── Step 4: 注文を作成 ──────────────────────
        order = await self._place_order(context.menu, recommended)
        record("order", order_id=order["order_id"])

        # ── Step 5: 完了を待つ ──────────────────────
        await self._wait_for_completion(order["order_id"])
        record("order-status", status=COMPLETED)

        # ── Step 6: 要約 ────────────────────────────
        summary = await self._load_order_summary(order["order_id"])
        record("order-summary")
        logger.debug("orchestration log: %s", step_log)

        return build_summary_response(
            context.menu,
            context.store,
            summary["total_price"],
            summary["eta_minutes"],
            recommended,
        )

    async def _find_candidates(self, region: str | None, keyword: str | None) -> list[SearchResult]:
        results = await search.search_menus(self.store, region=region, keyword=keyword, limit=CANDIDATE_LIMIT)
        candidates = filter_hogun_titles(results)

        if not candidates and region:
            results = await search.search_menus(self.store, region=None, keyword=keyword, limit=CANDIDATE_LIMIT)
            candidates = filter_hogun_titles(results)

        if not candidates:
            raise ApiError(
                "orchestrate/no-candidates",
                "조건에 맞는 메뉴를 찾지 못했습니다.",
                "검색 지역이나 키워드를 완화해 다시 시도해주세요.",
                {"step": "search", "cause": "empty"},
            )
        return candidates

    async def _place_order(self, menu: MenuRecord, recommended: list[MenuOption]) -> dict:
        payload = {
            "user_id": ORCHESTRATOR_USER_ID,
            "items": [
                {
                    "menu_id": menu.id,
                    "qty": 1,
                    "selected_options": [option.model_dump(exclude_none=True) for option in recommended],
                }
            ],
        }
        try:
            return await commands.create_order(self.store, self.publisher, self.scheduler, payload)
        except ApiError as e:
            raise ApiError(
                e.code,
                e.message,
                e.hint,
                {**(e.details or {}), "step": "order"},
                status=e.status,
            ) from e
        except Exception as e:
            raise ApiError(
                "orchestrate/order-failed",
                "주문 생성 중 오류가 발생했습니다.",
                "잠시 후 다시 시도해주세요.",
                {"step": "order", "cause": str(e) or "unknown"},
            ) from e

    async def _wait_for_completion(self, order_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_timeout

        while loop.time() < deadline:
            status = await queries.get_order_status(self.store, order_id)
            if status["status"] == COMPLETED:
                return
            if status["status"] == CANCELLED:
                raise ApiError(
                    "orchestrate/order-cancelled",
                    "주문이 취소되었습니다.",
                    "다른 메뉴를 선택해 다시 시도해주세요.",
                    {"step": "order-status", "cause": "cancelled", "order_id": order_id},
                )
            await asyncio.sleep(self.poll_interval)

        raise ApiError(
            "orchestrate/order-timeout",
            "주문 완료를 확인하지 못했습니다.",
            "네트워크 상태를 확인 후 다시 요청해주세요.",
            {"step": "order-status", "cause": "timeout", "order_id": order_id},
        )

    async def _load_order_summary(self, order_id: str) -> dict:
        try:
            snapshot = await self.store.get("orders", order_id)
        except SQLAlchemyError as e:
            raise ApiError(
                "orchestrate/order-summary-failed",
                "주문 요약 정보를 불러오지 못했습니다.",
                "잠시 후 다시 시도해주세요.",
                {"step": "order-summary", "cause": str(e) or "unknown"},
            ) from e

        if not snapshot.exists:
            raise ApiError(
                "order/not-found",
                "주문 정보를 찾을 수 없습니다.",
                "order_id를 다시 확인해주세요.",
                {"step": "order-summary", "cause": "missing"},
            )

        order = OrderRecord.from_document(snapshot.to_dict())
        return {"total_price": order.total_price, "eta_minutes": order.eta_minutes}


class FallbackPolicy:
    """
    失敗時の応答方針。

    orchestrate/invalid-payload 以外の失敗はすべてモック応答 (200) に差し替える。
    実際の障害を隠すことになるため、差し替えたエラーは必ずログに残す。
    """

    passthrough_codes = frozenset({"orchestrate/invalid-payload"})

    def __init__(self, pipeline: OrchestrationPipeline) -> None:
        self.pipeline = pipeline

    def should_fall_back(self, error: Exception) -> bool:
        return not (isinstance(error, ApiError) and error.code in self.passthrough_codes)

    async def run(self, payload) -> dict:
        try:
            request = normalize_orchestrate_payload(payload)
            return await self.pipeline.execute(request)
        except Exception as e:
            if not self.should_fall_back(e):
                raise
            logger.warning("Orchestration failed, serving mock response: %r", e, exc_info=True)
            return mock_response()
