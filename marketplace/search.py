"""
Marketplace — メニュー検索とランキング

    1. メニューを limit × 5 件まで読み込む (本来はインデックスで置き換える全件スキャン)
    2. 参照されている店舗をまとめて読み込む
    3. 店舗なし / 営業外 / 在庫切れ / 地域不一致 / キーワード不一致を除外
    4. 重み付きスコア = rating × w.rating − price × w.price − base_fee × w.fee
    5. 一致が limit × 2 件に達したら走査を打ち切り、スコア降順で limit 件返す

5 の打ち切りにより、絞り込みが疎な場合は全体最適な結果にならない。
走査コストを抑えるための意図的なトレードオフとしてそのまま残している。
"""

import logging
import math

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from .documents import DocumentStore
from .errors import map_store_error
from .models import MenuRecord, RuntimeWeights, StoreRecord, coerce_number

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
MAX_LIMIT = 50
DEFAULT_WEIGHTS = RuntimeWeights(price=0.3, rating=0.5, fee=0.2)


class SearchResult(BaseModel):
    menu: MenuRecord
    store: StoreRecord
    score: float


def clamp_limit(limit) -> int:
    if isinstance(limit, bool) or not isinstance(limit, (int, float)) or not math.isfinite(limit) or not limit:
        return DEFAULT_LIMIT
    return min(max(int(limit), 1), MAX_LIMIT)


def calculate_weighted_score(menu: MenuRecord, store: StoreRecord, weights: RuntimeWeights) -> float:
    rating_score = menu.rating.score * weights.rating
    price_score = menu.price * weights.price
    fee_score = store.delivery.base_fee * weights.fee
    return rating_score - price_score - fee_score


def matches_keyword(keyword: str, menu: MenuRecord, store: StoreRecord) -> bool:
    haystacks = [value.lower() for value in (menu.name, menu.title, store.name) if value]
    return any(keyword in value for value in haystacks)


async def load_runtime_weights(store: DocumentStore) -> RuntimeWeights:
    """settings/runtime の weights を読む。ドキュメントが無ければ既定値。"""
    try:
        snapshot = await store.get("settings", "runtime")
    except SQLAlchemyError as e:
        raise map_store_error("settings/runtime", e) from e

    if not snapshot.exists:
        return DEFAULT_WEIGHTS

    weights = snapshot.data.get("weights")
    weights = weights if isinstance(weights, dict) else {}
    return RuntimeWeights(
        price=coerce_number(weights.get("price")),
        rating=coerce_number(weights.get("rating")),
        fee=coerce_number(weights.get("fee")),
    )


async def search_menus(
    store: DocumentStore,
    region: str | None = None,
    keyword: str | None = None,
    limit=None,
    weights: RuntimeWeights | None = None,
) -> list[SearchResult]:
    limit = clamp_limit(limit)
    keyword = keyword.strip().lower() if keyword else ""
    region = region.strip().lower() if region else ""

    try:
        menu_snapshots = await store.scan("menus", limit=limit * 5)
        menus = [MenuRecord.from_document(s.to_dict()) for s in menu_snapshots]

        store_ids = list(dict.fromkeys(menu.store_id for menu in menus if menu.store_id))
        stores = {
            s.id: StoreRecord.from_document(s.to_dict())
            for s in await store.get_many("stores", store_ids)
            if s.exists
        }

        if weights is None:
            weights = await load_runtime_weights(store)
    except SQLAlchemyError as e:
        raise map_store_error("menus/search", e) from e

    matched: list[SearchResult] = []
    for menu in menus:
        owner = stores.get(menu.store_id)
        if owner is None:
            continue
        if not owner.is_open:
            continue
        if menu.is_out_of_stock:
            continue
        if region and owner.region.lower() != region:
            continue
        if keyword and not matches_keyword(keyword, menu, owner):
            continue

        matched.append(
            SearchResult(menu=menu, store=owner, score=calculate_weighted_score(menu, owner, weights))
        )
        if len(matched) >= limit * 2:
            break

    matched.sort(key=lambda result: result.score, reverse=True)
    logger.debug("search region=%r keyword=%r matched=%d", region, keyword, len(matched))
    return matched[:limit]
