"""
Marketplace — 店舗オーナー向け管理 API (/dashboard)

すべてのルートで Bearer トークンを検証し、オーナー uid で所有権を確認する。

    GET    /store                    自分の店舗 (owner_uid で最初の 1 件)
    PATCH  /store                    店舗を更新 → 全メニューのタイトルを再計算
    GET    /menus?storeId=           メニュー一覧 (新しい順, 最大 100)
    POST   /stores/{storeId}/menus   メニュー作成 (201) → タイトル計算
    PUT    /menus/{menuId}           メニュー更新 → タイトル再計算
    DELETE /menus/{menuId}           メニュー削除 (204)
    GET    /orders?storeId=          注文一覧 (新しい順, 最大 50)
    GET    /orders/{orderId}         注文詳細
"""

import logging
import math
from typing import Any

from fastapi import APIRouter, Body, Depends, Request, Response
from sqlalchemy.exc import SQLAlchemyError

from . import projections, queries
from .documents import DocumentStore
from .errors import ApiError, map_store_error
from .identity import require_owner
from .models import MenuRecord, OrderRecord, StoreRecord, coerce_number, coerce_string
from .title import build_title

logger = logging.getLogger(__name__)

MENU_LIST_LIMIT = 100
ORDER_LIST_LIMIT = 50

router = APIRouter(prefix="/dashboard")


# ── 所有権 ───────────────────────────────────────


async def find_primary_store(store: DocumentStore, owner_uid: str) -> dict:
    try:
        snapshots = await store.query("stores", where=("owner_uid", owner_uid), limit=1)
    except SQLAlchemyError as e:
        raise map_store_error("stores/by-owner", e) from e

    if not snapshots:
        raise ApiError("store/not-found", "스토어 정보를 찾을 수 없습니다.", "스토어를 먼저 생성해주세요.")
    return snapshots[0].to_dict()


async def resolve_store_by_owner(store: DocumentStore, owner_uid: str, store_id: str | None = None) -> dict:
    if not store_id:
        return await find_primary_store(store, owner_uid)

    try:
        snapshot = await store.get("stores", store_id)
    except SQLAlchemyError as e:
        raise map_store_error(f"stores/{store_id}", e) from e

    if not snapshot.exists:
        raise ApiError("store/not-found", "스토어 정보를 찾을 수 없습니다.", "storeId 값을 다시 확인해주세요.")
    if snapshot.data.get("owner_uid") != owner_uid:
        raise ApiError("store/unauthorized", "스토어에 대한 권한이 없습니다.")
    return snapshot.to_dict()


async def load_menu_with_ownership(store: DocumentStore, menu_id: str, owner_uid: str) -> dict:
    try:
        snapshot = await store.get("menus", menu_id)
    except SQLAlchemyError as e:
        raise map_store_error(f"menus/{menu_id}", e) from e

    if not snapshot.exists:
        raise ApiError("menu/not-found", "메뉴를 찾을 수 없습니다.", "menuId 값을 다시 확인해주세요.")

    store_id = snapshot.data.get("store_id")
    await resolve_store_by_owner(store, owner_uid, store_id if isinstance(store_id, str) else "")
    return snapshot.to_dict()


# ── ペイロードの正規化 ────────────────────────────


def _finite(value) -> int | float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        return int(number) if number.is_integer() else number
    return None


def normalize_store_payload(payload) -> dict:
    if not isinstance(payload, dict):
        raise ApiError("store/invalid-payload", "스토어 요청 본문이 올바르지 않습니다.", "JSON 객체 형태로 전달해주세요.")

    name = coerce_string(payload.get("name"))
    region = coerce_string(payload.get("region"))
    if not name or not region:
        raise ApiError("store/invalid-payload", "스토어 이름과 지역은 필수입니다.", "name, region 값을 확인해주세요.")

    delivery = payload.get("delivery") if isinstance(payload.get("delivery"), dict) else {}
    rating = payload.get("rating") if isinstance(payload.get("rating"), dict) else {}

    return {
        "name": name,
        "region": region,
        "status": coerce_string(payload.get("status"), "open"),
        "delivery": {
            "available": delivery.get("available") is True,
            "base_fee": coerce_number(delivery.get("base_fee")),
            "rules": delivery.get("rules") if isinstance(delivery.get("rules"), list) else [],
        },
        "rating": {
            "score": coerce_number(rating.get("score")),
            "count": coerce_number(rating.get("count")),
        },
    }


def normalize_menu_payload(payload) -> dict:
    if not isinstance(payload, dict):
        raise ApiError("menu/invalid-payload", "메뉴 요청 본문이 올바르지 않습니다.", "JSON 객체 형태로 전달해주세요.")

    name = coerce_string(payload.get("name"))
    price = _finite(payload.get("price"))
    stock = _finite(payload.get("stock"))
    if not name or price is None or stock is None:
        raise ApiError("menu/invalid-payload", "메뉴 이름, 가격, 재고는 필수입니다.", "name, price, stock 값을 확인해주세요.")

    images = payload.get("images")
    result = {
        "name": name,
        "price": price,
        "currency": coerce_string(payload.get("currency"), "KRW") or "KRW",
        "stock": stock,
        "option_groups": payload.get("option_groups") if isinstance(payload.get("option_groups"), list) else [],
        "images": [i for i in images if isinstance(i, str)] if isinstance(images, list) else [],
    }
    if isinstance(payload.get("description"), str):
        result["description"] = payload["description"]
    return result


# ── シリアライズ ──────────────────────────────────
# 読み取り境界で型付きレコードに変換してから、管理画面向けの形に整える。


def serialize_store(data: dict) -> dict:
    record = StoreRecord.from_document(data)
    body = record.model_dump()
    body["status"] = record.status or "open"
    return body


def serialize_menu(data: dict) -> dict:
    record = MenuRecord.from_document(data)
    return {
        "id": record.id,
        "store_id": record.store_id,
        "name": record.name,
        "price": record.price,
        "currency": record.currency,
        "stock": coerce_number(record.stock),
        "option_groups": record.option_groups,
        # rating を持たないメニューは null のまま返す
        "rating": record.rating.model_dump() if "rating" in record.model_fields_set else None,
        "images": record.images,
        "description": record.description,
        "title": record.title,
        "title_v": _finite(record.title_v),
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def _option_label(entry) -> str:
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        return coerce_string(entry.get("label") or entry.get("id") or "")
    return ""


def _serialize_item(item: dict) -> dict:
    selected = item.get("selected_options")
    labels = [_option_label(entry) for entry in selected] if isinstance(selected, list) else []
    return {
        "menu_id": coerce_string(item.get("menu_id")),
        "name": coerce_string(item.get("name")),
        "qty": coerce_number(item.get("quantity", item.get("qty"))),
        "selected_options": [label for label in labels if label],
        "price": coerce_number(item.get("price")),
    }


def serialize_order(data: dict) -> dict:
    record = OrderRecord.from_document(data)
    return {
        "id": record.id,
        "user_id": record.user_id,
        "status": record.status,
        "payment_status": record.payment_status,
        "receipt_id": record.receipt_id,
        "eta_minutes": record.eta_minutes,
        "items": [_serialize_item(item) for item in record.items],
        "store_id": record.store_id,
        "timeline": [entry.model_dump() for entry in record.timeline],
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


async def build_title_preview(store: DocumentStore, store_data: dict) -> str | None:
    try:
        snapshots = await store.query("menus", where=("store_id", store_data["id"]), limit=1)
    except SQLAlchemyError:
        logger.exception("Failed to build title preview")
        return None
    if not snapshots:
        return None
    return build_title(snapshots[0].data, store_data)


# ── ルート ───────────────────────────────────────


@router.get("/store")
async def get_store(request: Request, owner_uid: str = Depends(require_owner)):
    store = await find_primary_store(request.app.state.store, owner_uid)
    return {"store": serialize_store(store)}


@router.patch("/store")
async def update_store(
    request: Request,
    payload: Any = Body(default=None),
    owner_uid: str = Depends(require_owner),
):
    documents: DocumentStore = request.app.state.store
    current = await find_primary_store(documents, owner_uid)
    updates = normalize_store_payload(payload)

    try:
        await documents.set("stores", current["id"], updates, merge=True)
        snapshot = await documents.get("stores", current["id"])
    except SQLAlchemyError as e:
        raise map_store_error(f"stores/{current['id']}", e) from e

    updated = snapshot.to_dict()
    await projections.sync_store_menus(documents, request.app.state.publisher, updated["id"])

    body = {"store": serialize_store(updated)}
    preview = await build_title_preview(documents, updated)
    if preview:
        body["title_preview"] = preview
    return body


@router.get("/menus")
async def list_menus(request: Request, storeId: str | None = None, owner_uid: str = Depends(require_owner)):
    documents: DocumentStore = request.app.state.store
    store = await resolve_store_by_owner(documents, owner_uid, storeId)
    menus = await queries.list_store_documents(documents, "menus", store["id"], MENU_LIST_LIMIT)
    return {"menus": [serialize_menu(menu) for menu in menus]}


@router.post("/stores/{storeId}/menus", status_code=201)
async def create_menu(
    request: Request,
    storeId: str,
    payload: Any = Body(default=None),
    owner_uid: str = Depends(require_owner),
):
    documents: DocumentStore = request.app.state.store
    store = await resolve_store_by_owner(documents, owner_uid, storeId)
    data = normalize_menu_payload(payload)

    try:
        menu_id = await documents.add("menus", {**data, "store_id": store["id"], "title_v": 0})
    except SQLAlchemyError as e:
        raise map_store_error("menus/new", e) from e

    await projections.sync_menu_title(documents, request.app.state.publisher, menu_id)
    snapshot = await documents.get("menus", menu_id)
    return {"menu": serialize_menu(snapshot.to_dict())}


@router.put("/menus/{menuId}")
async def update_menu(
    request: Request,
    menuId: str,
    payload: Any = Body(default=None),
    owner_uid: str = Depends(require_owner),
):
    documents: DocumentStore = request.app.state.store
    menu = await load_menu_with_ownership(documents, menuId, owner_uid)
    data = normalize_menu_payload(payload)

    try:
        await documents.set("menus", menu["id"], data, merge=True)
    except SQLAlchemyError as e:
        raise map_store_error(f"menus/{menu['id']}", e) from e

    await projections.sync_menu_title(documents, request.app.state.publisher, menu["id"])
    snapshot = await documents.get("menus", menu["id"])
    return {"menu": serialize_menu(snapshot.to_dict())}


@router.delete("/menus/{menuId}", status_code=204)
async def delete_menu(request: Request, menuId: str, owner_uid: str = Depends(require_owner)):
    documents: DocumentStore = request.app.state.store
    menu = await load_menu_with_ownership(documents, menuId, owner_uid)

    try:
        await documents.delete("menus", menu["id"])
    except SQLAlchemyError as e:
        raise map_store_error(f"menus/{menu['id']}", e) from e
    return Response(status_code=204)


@router.get("/orders")
async def list_orders(request: Request, storeId: str | None = None, owner_uid: str = Depends(require_owner)):
    documents: DocumentStore = request.app.state.store
    store = await resolve_store_by_owner(documents, owner_uid, storeId)
    orders = await queries.list_store_documents(documents, "orders", store["id"], ORDER_LIST_LIMIT)
    return {"orders": [serialize_order(order) for order in orders]}


@router.get("/orders/{orderId}")
async def get_order(request: Request, orderId: str, owner_uid: str = Depends(require_owner)):
    documents: DocumentStore = request.app.state.store
    try:
        snapshot = await documents.get("orders", orderId)
    except SQLAlchemyError as e:
        raise map_store_error(f"orders/{orderId}", e) from e

    if not snapshot.exists:
        raise ApiError("order/not-found", "주문을 찾을 수 없습니다.", "orderId 값을 다시 확인해주세요.")

    store_id = snapshot.data.get("store_id")
    await resolve_store_by_owner(documents, owner_uid, store_id if isinstance(store_id, str) else "")
    return {"order": serialize_order(snapshot.to_dict())}
