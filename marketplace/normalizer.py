"""
Marketplace — 注文リクエストの正規化

生の JSON ペイロードを検証して NormalizedOrder に変換する。
検証は以下の順に行い、それぞれ別のエラーコードで失敗する。

    1. ペイロードがオブジェクトでない      → order/invalid-payload
    2. user_id が無い・空                   → order/invalid-user
    3. items が無い・配列でない・空         → order/empty-items
    4. 項目がオブジェクトでない             → order/invalid-item
    5. menu_id が無い                       → order/missing-menu
    6. qty が正の整数でない                 → order/invalid-quantity

オプションは ID が無いものを黙って捨てる (エラーにはしない)。
"""

import math
from typing import Any

from pydantic import BaseModel, Field

from .errors import ApiError
from .models import coerce_number, coerce_string


class NormalizedOption(BaseModel):
    id: str
    price: int | float = 0
    label: str | None = None

    def snapshot(self) -> dict:
        data: dict[str, Any] = {"id": self.id, "price": self.price}
        if self.label is not None:
            data["label"] = self.label
        return data


class NormalizedItem(BaseModel):
    menu_id: str
    quantity: int
    selected_options: list[NormalizedOption] = Field(default_factory=list)


class NormalizedOrder(BaseModel):
    user_id: str
    items: list[NormalizedItem]


def normalize_order_request(payload: Any) -> NormalizedOrder:
    if not isinstance(payload, dict):
        raise ApiError(
            "order/invalid-payload",
            "주문 요청 본문이 올바르지 않습니다.",
            "JSON 객체 형태로 전달해주세요.",
        )

    user_id_raw = payload.get("user_id")
    user_id = user_id_raw.strip() if isinstance(user_id_raw, str) else ""
    if not user_id:
        raise ApiError(
            "order/invalid-user",
            "user_id는 필수 값입니다.",
            "로그인한 사용자 ID를 전달해주세요.",
        )

    items_raw = payload.get("items")
    if not isinstance(items_raw, list) or not items_raw:
        raise ApiError(
            "order/empty-items",
            "최소 한 개의 주문 항목을 포함해야 합니다.",
            "items 배열을 확인해주세요.",
        )

    items = [_normalize_item(entry) for entry in items_raw]
    return NormalizedOrder(user_id=user_id, items=items)


def _normalize_item(entry: Any) -> NormalizedItem:
    if not isinstance(entry, dict):
        raise ApiError(
            "order/invalid-item",
            "주문 항목 형식이 잘못되었습니다.",
            "menu_id와 qty를 포함한 객체 형태여야 합니다.",
        )

    menu_id_raw = entry.get("menu_id")
    menu_id = menu_id_raw.strip() if isinstance(menu_id_raw, str) else ""
    if not menu_id:
        raise ApiError(
            "order/missing-menu",
            "menu_id가 누락되었습니다.",
            "각 항목에 menu_id를 포함해주세요.",
        )

    quantity = _quantity(entry.get("qty"))
    if quantity is None or quantity <= 0:
        raise ApiError(
            "order/invalid-quantity",
            "수량(qty)은 1 이상의 정수여야 합니다.",
            "요청 수량을 다시 확인해주세요.",
        )

    return NormalizedItem(
        menu_id=menu_id,
        quantity=quantity,
        selected_options=_normalize_options(entry.get("selected_options")),
    )


def _quantity(value: Any) -> int | None:
    # 数値以外 (文字列・真偽値を含む) は不正。小数は切り捨てる
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return math.floor(value)


def _normalize_options(raw: Any) -> list[NormalizedOption]:
    options: list[NormalizedOption] = []
    if not isinstance(raw, list):
        return options

    for option in raw:
        if not isinstance(option, dict):
            continue

        option_id = coerce_string(option.get("id"))
        if not option_id:
            continue

        label_raw = option.get("label")
        if label_raw is None:
            label_raw = option.get("name")
        label = label_raw.strip() if isinstance(label_raw, str) and label_raw.strip() else None

        options.append(
            NormalizedOption(
                id=option_id,
                price=coerce_number(option.get("price")),
                label=label,
            )
        )
    return options
