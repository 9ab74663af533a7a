"""
Marketplace — メニュータイトルの生成

メニューと店舗のフィールドから検索用タイトルを決定的に生成する純粋関数。

    region_store-name_menu-name_price_base-fee_currency_rating_status_stock__hogun

各トークンは前後の空白を落とし、内部の連続空白をハイフン 1 つに置き換える。
値が無い・空のトークンはフィールドごとの既定値に置き換える。
末尾の __hogun は常に付与する (オーケストレーションの候補フィルタが参照する)。
"""

import math
import re
from typing import Any, Mapping

HOGUN_SUFFIX = "__hogun"

DEFAULTS = {
    "region": "unknown-region",
    "store_name": "unknown-store",
    "menu_name": "unknown-menu",
    "price": "0",
    "base_fee": "0",
    "currency": "KRW",
    "rating_score": "0",
    "status": "unknown-status",
    "stock": "0",
}

_WHITESPACE = re.compile(r"\s+")


def format_number(value: float | int) -> str:
    """ロケール区切りを入れずに数値を文字列化する (18000.0 → "18000")。"""
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    return str(value)


def _token(value: Any, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, bool):
        raw = "true" if value else "false"
    elif isinstance(value, (int, float)):
        raw = format_number(value)
    else:
        raw = str(value)
    trimmed = raw.strip()
    if not trimmed:
        return default
    return _WHITESPACE.sub("-", trimmed)


def _mapping(value: Any) -> Mapping:
    return value if isinstance(value, Mapping) else {}


def build_title(menu: Mapping | None, store: Mapping | None) -> str:
    menu = _mapping(menu)
    store = _mapping(store)
    delivery = _mapping(store.get("delivery"))
    rating = _mapping(menu.get("rating"))

    parts = [
        _token(store.get("region"), DEFAULTS["region"]),
        _token(store.get("name"), DEFAULTS["store_name"]),
        _token(menu.get("name"), DEFAULTS["menu_name"]),
        _token(menu.get("price"), DEFAULTS["price"]),
        _token(delivery.get("base_fee"), DEFAULTS["base_fee"]),
        _token(menu.get("currency"), DEFAULTS["currency"]),
        _token(rating.get("score"), DEFAULTS["rating_score"]),
        _token(store.get("status"), DEFAULTS["status"]),
        _token(menu.get("stock"), DEFAULTS["stock"]),
    ]
    return "_".join(parts) + HOGUN_SUFFIX


def has_hogun_marker(title: Any) -> bool:
    return isinstance(title, str) and title.endswith(HOGUN_SUFFIX)
