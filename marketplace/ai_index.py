"""
Marketplace — AI クローラー向けの静的インデックス

    GET /ai/index.json           店舗一覧 (最大 200 件)
    GET /ai/store/{storeId}.json 店舗サマリー + メニュー (説明は 180 文字まで)

成功時は CDN で 60 秒キャッシュ、エラー時はキャッシュさせない。
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .documents import DocumentStore
from .errors import ApiError, map_store_error
from .models import coerce_number

logger = logging.getLogger(__name__)

CACHE_HEADER_SUCCESS = "public, s-maxage=60, must-revalidate"
CACHE_HEADER_ERROR = "public, max-age=0, must-revalidate"
INDEX_STORE_LIMIT = 200
DESCRIPTION_LIMIT = 180

router = APIRouter(prefix="/ai")


def _string(value) -> str | None:
    return value if isinstance(value, str) else None


def extract_description(description) -> str | None:
    if not isinstance(description, str):
        return None
    trimmed = description.strip()
    if len(trimmed) <= DESCRIPTION_LIMIT:
        return trimmed or None
    return trimmed[: DESCRIPTION_LIMIT - 3] + "..."


def select_menu_title(data: dict) -> str:
    return _string(data.get("title")) or _string(data.get("name")) or ""


async def build_index_payload(store: DocumentStore) -> dict:
    try:
        snapshots = await store.scan("stores", limit=INDEX_STORE_LIMIT)
    except SQLAlchemyError as e:
        raise map_store_error("stores/index", e) from e

    return {
        "version": 1,
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "stores": [
            {
                "store_id": s.id,
                "region": _string(s.data.get("region")),
                "name": _string(s.data.get("name")),
            }
            for s in snapshots
        ],
    }


async def build_store_payload(store: DocumentStore, store_id: str) -> dict:
    try:
        owner = await store.get("stores", store_id)
        if not owner.exists:
            raise ApiError("store/not-found", "해당 매장을 찾을 수 없습니다.", "storeId 값을 다시 확인해주세요.")
        menus = await store.query("menus", where=("store_id", store_id))
    except SQLAlchemyError as e:
        raise map_store_error(f"stores/{store_id}/menus", e) from e

    entries = []
    for menu in menus:
        content: dict = {"description": extract_description(menu.data.get("description"))}
        price = coerce_number(menu.data.get("price"), default=None)
        if price is not None:
            content["price"] = price
        currency = _string(menu.data.get("currency"))
        if currency:
            content["currency"] = currency
        entries.append({"menu_id": menu.id, "title": select_menu_title(menu.data), "content": content})

    return {
        "version": 1,
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "store": {
            "store_id": owner.id,
            "name": _string(owner.data.get("name")),
            "region": _string(owner.data.get("region")),
            "status": _string(owner.data.get("status")),
        },
        "menus": entries,
    }


def _success(payload: dict) -> JSONResponse:
    return JSONResponse(payload, headers={"Cache-Control": CACHE_HEADER_SUCCESS})


def _failure(error: Exception) -> JSONResponse:
    if not isinstance(error, ApiError):
        logger.exception("AI index request failed", exc_info=error)
        error = ApiError(
            "ai/internal-error",
            "AI 인덱스 처리 중 오류가 발생했습니다.",
            details={"cause": str(error)},
        )
    payload = {"code": error.code, "message": error.message}
    if error.hint:
        payload["hint"] = error.hint
    if error.details:
        payload["details"] = error.details
    return JSONResponse(payload, status_code=error.status, headers={"Cache-Control": CACHE_HEADER_ERROR})


@router.get("/index.json")
async def ai_index(request: Request):
    try:
        return _success(await build_index_payload(request.app.state.store))
    except Exception as e:
        return _failure(e)


@router.get("/store/{store_file}")
async def ai_store(request: Request, store_file: str):
    if not store_file.lower().endswith(".json") or len(store_file) <= len(".json"):
        return _failure(
            ApiError("ai/not-found", "요청한 AI 인덱스 경로를 찾을 수 없습니다.", "지원되는 엔드포인트를 확인해주세요.")
        )
    try:
        return _success(await build_store_payload(request.app.state.store, store_file[: -len(".json")]))
    except Exception as e:
        return _failure(e)
