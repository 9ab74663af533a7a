"""
Marketplace — コマンドハンドラ (書き込み側)

注文作成とステータス前進を処理する。

create_order:
    1. リクエストを正規化
    2. メニュー/店舗コンテキストを取得
    3. ドラフトを組み立て (E01/E02/E03 なら代替メニューを付けて 409)
    4. 注文ドキュメントを保存
    5. ステータス進行をスケジュール
    6. OrderCreated イベントを発行
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from . import queries, search
from .aggregate import PENDING, OrderStatusMachine
from .documents import DocumentStore
from .drafts import MenuContext, build_order_draft
from .errors import ApiError, OrderValidationError, map_store_error
from .events import ORDER_CHANNEL, EventPublisher, OrderCreated, OrderStatusAdvanced
from .models import OrderRecord, StoreRecord
from .normalizer import normalize_order_request

logger = logging.getLogger(__name__)

# 決済連携はスタブ。作成時に固定値を記録するだけ
PAYMENT_STATUS = "paid"
RECEIPT_ID = "demo123"
ETA_MINUTES = 1

MAX_ALTERNATIVES = 3


async def create_order(
    store: DocumentStore,
    publisher: EventPublisher,
    scheduler,
    payload,
) -> dict:
    order = normalize_order_request(payload)
    menu_ids = list(dict.fromkeys(item.menu_id for item in order.items))
    contexts = await queries.fetch_menu_contexts(store, menu_ids)

    try:
        draft = build_order_draft(order.user_id, order.items, contexts)
    except OrderValidationError as e:
        raise await _order_conflict(store, e, contexts) from e

    data = {
        "user_id": order.user_id,
        "store_id": draft.store.id,
        "status": PENDING,
        "payment_status": PAYMENT_STATUS,
        "receipt_id": RECEIPT_ID,
        "eta_minutes": ETA_MINUTES,
        "options_price": draft.totals.options_price,
        "base_price": draft.totals.base_price,
        "total_price": draft.totals.total_price,
        "items": draft.items,
        "timeline": draft.timeline,
    }

    try:
        order_id = await store.add("orders", data)
    except SQLAlchemyError as e:
        raise map_store_error("orders/new", e) from e

    logger.info("Order %s created for store %s (total=%s)", order_id, draft.store.id, draft.totals.total_price)
    scheduler.schedule(order_id)

    await publisher.publish(
        ORDER_CHANNEL,
        OrderCreated(
            order_id=order_id,
            user_id=order.user_id,
            store_id=draft.store.id,
            total_price=draft.totals.total_price,
            timestamp=datetime.now(timezone.utc),
        ),
    )

    return {"order_id": order_id, "status": PENDING, "payment_status": PAYMENT_STATUS}


async def advance_order_status(
    store: DocumentStore,
    publisher: EventPublisher,
    order_id: str,
    target_status: str,
) -> bool:
    """
    注文ステータスを target_status へ 1 トランザクションで前進させる。

    注文が無い / cancelled / 目標ランクが現在以下 の場合は何もしない。
    書き込んだ場合のみ True を返す。
    """
    now = datetime.now(timezone.utc)

    async with store.transaction() as tx:
        snapshot = await tx.get("orders", order_id)
        if not snapshot.exists:
            return False

        machine = OrderStatusMachine(OrderRecord.from_document(snapshot.to_dict()))
        previous = machine.status
        updates = machine.advance(target_status, now.isoformat())
        if updates is None:
            return False

        await tx.update("orders", order_id, updates)

    logger.info("Order %s advanced %s -> %s", order_id, previous, target_status)
    await publisher.publish(
        ORDER_CHANNEL,
        OrderStatusAdvanced(
            order_id=order_id,
            previous_status=previous,
            status=target_status,
            timestamp=now,
        ),
    )
    return True


async def suggest_alternatives(
    store: DocumentStore,
    owner: StoreRecord,
    exclude_menu_ids: set[str],
) -> list[str]:
    """同じ地域の検索結果から代替メニューを最大 3 件返す。失敗しても空リスト。"""
    try:
        results = await search.search_menus(store, region=owner.region, limit=8)
    except Exception:
        logger.exception("Failed to fetch alternative menus")
        return []

    ids = [r.menu.id for r in results if r.menu.id and r.menu.id not in exclude_menu_ids]
    return ids[:MAX_ALTERNATIVES]


async def _order_conflict(
    store: DocumentStore,
    error: OrderValidationError,
    contexts: dict[str, MenuContext],
) -> ApiError:
    exclude = set(contexts)
    if error.menu is not None:
        exclude.add(error.menu.id)

    alternatives = await suggest_alternatives(store, error.store, exclude)
    return ApiError(error.code, error.message, details={"alternatives": alternatives})
