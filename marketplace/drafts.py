"""
Marketplace — 注文ドラフトの組み立て

正規化済みの注文項目と、事前に取得したメニュー/店舗コンテキストから
保存前の注文 (ドラフト) を作る。ストアには触らない純粋な処理。

    1. メニュー ID ごとに要求数量を合算する (同じメニューが複数行にあっても在庫は合算で判定)
    2. 最初の項目の店舗で注文の店舗を固定する。別店舗のメニューは order/multiple-stores
    3. 店舗固定時に営業中 (E02) と配達可否 (E03) を 1 回だけ確認する
    4. 各項目の在庫を確認する (E01)
    5. 行ごとのスナップショットと合計金額を計算する
"""

from datetime import datetime, timezone

from pydantic import BaseModel

from .errors import ApiError, OrderValidationError
from .models import OUT_OF_STOCK_MARKERS, MenuRecord, StoreRecord
from .normalizer import NormalizedItem


class MenuContext(BaseModel):
    menu: MenuRecord
    store: StoreRecord


class OrderTotals(BaseModel):
    base_price: int | float
    options_price: int | float
    total_price: int | float


class OrderDraft(BaseModel):
    store: StoreRecord
    items: list[dict]
    totals: OrderTotals
    timeline: list[dict]


def build_order_draft(
    user_id: str,
    items: list[NormalizedItem],
    menu_contexts: dict[str, MenuContext],
    now: str | None = None,
) -> OrderDraft:
    if not user_id:
        raise ApiError(
            "order/invalid-user",
            "user_id는 필수 값입니다.",
            "로그인한 사용자 ID를 전달해주세요.",
        )
    if not items:
        raise ApiError(
            "order/empty-items",
            "최소 한 개의 주문 항목을 포함해야 합니다.",
            "items 배열을 확인해주세요.",
        )

    now = now or datetime.now(timezone.utc).isoformat()

    total_qty_by_menu: dict[str, int] = {}
    for item in items:
        total_qty_by_menu[item.menu_id] = total_qty_by_menu.get(item.menu_id, 0) + item.quantity

    store: StoreRecord | None = None
    base_total = 0
    options_total = 0
    order_items: list[dict] = []

    for item in items:
        context = menu_contexts.get(item.menu_id)
        if context is None:
            raise ApiError(
                "menu/not-found",
                "요청한 메뉴를 찾을 수 없습니다.",
                "menu_id 값을 확인해주세요.",
            )

        if store is None:
            store = context.store
            assert_store_accepts_order(store)
        elif store.id != context.store.id:
            raise ApiError(
                "order/multiple-stores",
                "하나의 주문에는 동일 매장의 메뉴만 포함할 수 있습니다.",
                "매장별로 주문을 분리해주세요.",
            )

        assert_stock_available(context.menu, context.store, total_qty_by_menu[item.menu_id])

        unit_price = context.menu.price
        options_per_unit = sum(option.price for option in item.selected_options)
        line_base = unit_price * item.quantity
        line_options = options_per_unit * item.quantity

        base_total += line_base
        options_total += line_options

        order_items.append(
            {
                "menu_id": context.menu.id,
                "name": context.menu.display_name,
                "quantity": item.quantity,
                "price": unit_price,
                "currency": context.menu.currency,
                "selected_options": [option.snapshot() for option in item.selected_options],
                "options_price": line_options,
                "line_total": line_base + line_options,
            }
        )

    if store is None:
        raise ApiError("order/missing-store", "주문 매장 정보를 확인할 수 없습니다.")

    return OrderDraft(
        store=store,
        items=order_items,
        totals=OrderTotals(
            base_price=base_total,
            options_price=options_total,
            total_price=base_total + options_total,
        ),
        timeline=[{"status": "pending", "at": now}],
    )


def assert_store_accepts_order(store: StoreRecord) -> None:
    if not store.is_open:
        raise OrderValidationError("E02", "마감", store)
    if store.delivery.available is not True:
        raise OrderValidationError("E03", "배달 불가", store)


def assert_stock_available(menu: MenuRecord, store: StoreRecord, required_qty: int) -> None:
    stock = menu.stock
    if isinstance(stock, (int, float)) and stock < required_qty:
        raise OrderValidationError("E01", "품절", store, menu)
    if isinstance(stock, str) and stock.lower() in OUT_OF_STOCK_MARKERS:
        raise OrderValidationError("E01", "품절", store, menu)
