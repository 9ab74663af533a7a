"""
Marketplace — クエリハンドラ (読み取り側)

ストアからの読み取りはすべてここを通す。
ストレージ層の例外は読み取り境界で捕まえ、どのコレクション/ID を
読んでいたかのコンテキスト付きで ApiError に変換する。
"""

from sqlalchemy.exc import SQLAlchemyError

from .documents import DocumentStore
from .drafts import MenuContext
from .errors import ApiError, map_store_error
from .models import MenuRecord, OrderRecord, StoreRecord


def _menu_not_found(hint: str = "menu_id 값을 확인해주세요.") -> ApiError:
    return ApiError("menu/not-found", "요청한 메뉴를 찾을 수 없습니다.", hint)


def _store_not_found() -> ApiError:
    return ApiError(
        "store/not-found",
        "연결된 매장 정보를 찾을 수 없습니다.",
        "store 문서가 존재하는지 확인해주세요.",
    )


def _menu_missing_store() -> ApiError:
    return ApiError(
        "menu/missing-store",
        "메뉴에 연결된 매장 정보가 없습니다.",
        "시드 데이터 혹은 메뉴 문서를 확인해주세요.",
    )


async def get_order_status(store: DocumentStore, order_id) -> dict:
    """注文の現在ステータスを返す。ステータスが無ければ pending とみなす。"""
    order_id = order_id.strip() if isinstance(order_id, str) else ""
    if not order_id:
        raise ApiError(
            "order/invalid-id",
            "주문 ID를 확인해주세요.",
            "올바른 주문 ID를 전달해주세요.",
        )

    try:
        snapshot = await store.get("orders", order_id)
    except SQLAlchemyError as e:
        raise map_store_error(f"orders/{order_id}", e) from e

    if not snapshot.exists:
        raise ApiError(
            "order/not-found",
            "요청한 주문을 찾을 수 없습니다.",
            "order_id 값을 다시 확인해주세요.",
        )

    order = OrderRecord.from_document(snapshot.to_dict())
    return {"order_id": order.id, "status": order.status}


async def fetch_menu_with_store(store: DocumentStore, menu_id: str) -> MenuContext:
    try:
        menu_snap = await store.get("menus", menu_id)
        if not menu_snap.exists:
            raise _menu_not_found("menuId 값을 확인해주세요.")

        menu = MenuRecord.from_document(menu_snap.to_dict())
        if not menu.store_id:
            raise _menu_missing_store()

        store_snap = await store.get("stores", menu.store_id)
        if not store_snap.exists:
            raise _store_not_found()
    except SQLAlchemyError as e:
        raise map_store_error(f"menus/{menu_id}", e) from e

    return MenuContext(menu=menu, store=StoreRecord.from_document(store_snap.to_dict()))


async def fetch_menu_contexts(store: DocumentStore, menu_ids: list[str]) -> dict[str, MenuContext]:
    """
    注文対象メニューとその店舗をまとめて取得する。

    メニューはユニーク ID ごとに 1 回ずつ並列で読み、次に参照されている
    店舗をユニーク ID ごとに並列で読む。どれか 1 つでも欠けていれば失敗。
    """
    try:
        menu_snapshots = await store.get_many("menus", menu_ids)

        menus: dict[str, MenuRecord] = {}
        for snapshot in menu_snapshots:
            if not snapshot.exists:
                raise _menu_not_found()
            menu = MenuRecord.from_document(snapshot.to_dict())
            if not menu.store_id:
                raise _menu_missing_store()
            menus[snapshot.id] = menu

        store_ids = list(dict.fromkeys(menu.store_id for menu in menus.values()))
        store_snapshots = await store.get_many("stores", store_ids)
    except SQLAlchemyError as e:
        raise map_store_error("orders/load-menus", e) from e

    stores: dict[str, StoreRecord] = {}
    for snapshot in store_snapshots:
        if not snapshot.exists:
            raise _store_not_found()
        stores[snapshot.id] = StoreRecord.from_document(snapshot.to_dict())

    return {
        menu_id: MenuContext(menu=menu, store=stores[menu.store_id])
        for menu_id, menu in menus.items()
    }


async def list_store_documents(store: DocumentStore, collection: str, store_id: str, limit: int) -> list[dict]:
    """店舗に紐づくドキュメントを新しい順に返す (メニュー・注文一覧用)。"""
    try:
        snapshots = await store.query(
            collection,
            where=("store_id", store_id),
            order_by="created_at",
            descending=True,
            limit=limit,
        )
    except SQLAlchemyError as e:
        raise map_store_error(f"stores/{store_id}/{collection}", e) from e
    return [snapshot.to_dict() for snapshot in snapshots]

