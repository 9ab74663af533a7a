"""
Marketplace — ドキュメントの型付きレコード

ストアから読み出したスキーマレスなドキュメントを、読み取り境界で一度だけ
型付きレコードに変換する。値が欠けていたり型が違う場合は既定値に寄せる
(coerce-or-default)。ビジネスロジック側では型チェックをしない。
"""

import math
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

OUT_OF_STOCK_MARKERS = {"out_of_stock", "out-of-stock"}


def coerce_number(value: Any, default: float = 0) -> int | float:
    """数値に寄せる。変換できない・有限でない値は default。"""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else default
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return default
        if not math.isfinite(number):
            return default
        return int(number) if number.is_integer() else number
    return default


def coerce_string(value: Any, default: str = "") -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return default
    return str(value)


def coerce_timestamp(value: Any) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


class Rating(BaseModel):
    score: int | float = 0
    count: int | float = 0

    @field_validator("score", "count", mode="before")
    @classmethod
    def _number(cls, v):
        return coerce_number(v)


class Delivery(BaseModel):
    available: bool = False
    base_fee: int | float = 0
    rules: list = Field(default_factory=list)

    @field_validator("available", mode="before")
    @classmethod
    def _strict_true(cls, v):
        # true 以外 ("true" 文字列や 1 を含む) は配達不可として扱う
        return v is True

    @field_validator("base_fee", mode="before")
    @classmethod
    def _fee(cls, v):
        return coerce_number(v)

    @field_validator("rules", mode="before")
    @classmethod
    def _rules(cls, v):
        return v if isinstance(v, list) else []


def _mapping(v):
    return v if isinstance(v, dict) else {}


class StoreRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    region: str = ""
    status: str = ""
    delivery: Delivery = Field(default_factory=Delivery)
    rating: Rating = Field(default_factory=Rating)
    owner_uid: str = ""
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("name", "region", "status", "owner_uid", mode="before")
    @classmethod
    def _string(cls, v):
        return v if isinstance(v, str) else ""

    @field_validator("delivery", "rating", mode="before")
    @classmethod
    def _nested(cls, v):
        return _mapping(v)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _timestamp(cls, v):
        return coerce_timestamp(v)

    @property
    def is_open(self) -> bool:
        return self.status.lower() == "open"

    @classmethod
    def from_document(cls, data: dict) -> "StoreRecord":
        return cls.model_validate(data)


class MenuOption(BaseModel):
    id: str
    price: int | float = 0
    label: str | None = None


class MenuRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    store_id: str = ""
    name: str = ""
    title: str = ""
    title_v: int | float | str | None = None
    price: int | float = 0
    currency: str = "KRW"
    stock: int | float | str | None = None
    option_groups: list = Field(default_factory=list)
    rating: Rating = Field(default_factory=Rating)
    description: str | None = None
    images: list[str] = Field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _timestamp(cls, v):
        return coerce_timestamp(v)

    @field_validator("store_id", "name", "title", mode="before")
    @classmethod
    def _string(cls, v):
        return v if isinstance(v, str) else ""

    @field_validator("title_v", mode="before")
    @classmethod
    def _title_version(cls, v):
        if isinstance(v, bool) or not isinstance(v, (int, float, str)):
            return None
        return v

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, v):
        return v if isinstance(v, str) and v else "KRW"

    @field_validator("price", mode="before")
    @classmethod
    def _price(cls, v):
        return coerce_number(v)

    @field_validator("stock", mode="before")
    @classmethod
    def _stock(cls, v):
        if isinstance(v, bool):
            return None
        if isinstance(v, (int, float, str)) or v is None:
            return v
        return None

    @field_validator("option_groups", mode="before")
    @classmethod
    def _groups(cls, v):
        return v if isinstance(v, list) else []

    @field_validator("rating", mode="before")
    @classmethod
    def _rating(cls, v):
        return _mapping(v)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, v):
        return v if isinstance(v, str) else None

    @field_validator("images", mode="before")
    @classmethod
    def _images(cls, v):
        return [i for i in v if isinstance(i, str)] if isinstance(v, list) else []

    @property
    def display_name(self) -> str:
        return self.name or self.title

    @property
    def is_out_of_stock(self) -> bool:
        """検索で除外する在庫状態 (数値 0 以下、または在庫切れ文字列)"""
        if isinstance(self.stock, str):
            return self.stock.lower() in OUT_OF_STOCK_MARKERS
        if isinstance(self.stock, (int, float)):
            return self.stock <= 0
        return False

    def option_candidates(self) -> list[list[MenuOption]]:
        """option_groups をグループ単位の MenuOption リストに正規化する。"""
        groups: list[list[MenuOption]] = []
        for group in self.option_groups:
            if not isinstance(group, dict):
                continue
            options = group.get("options")
            normalized: list[MenuOption] = []
            for option in options if isinstance(options, list) else []:
                if not isinstance(option, dict):
                    continue
                raw_id = option.get("id", option.get("option_id", option.get("value")))
                option_id = coerce_string(raw_id)
                if not option_id:
                    continue
                raw_price = option.get("price", option.get("cost", option.get("amount", 0)))
                raw_label = option.get("label", option.get("name", option.get("title")))
                normalized.append(
                    MenuOption(
                        id=option_id,
                        price=coerce_number(raw_price),
                        label=raw_label if isinstance(raw_label, str) else None,
                    )
                )
            groups.append(normalized)
        return groups

    @classmethod
    def from_document(cls, data: dict) -> "MenuRecord":
        return cls.model_validate(data)


class TimelineEntry(BaseModel):
    status: str = ""
    at: str | None = None


class OrderRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str = ""
    store_id: str = ""
    status: str = "pending"
    payment_status: str = ""
    receipt_id: str = ""
    eta_minutes: int | float = 0
    base_price: int | float = 0
    options_price: int | float = 0
    total_price: int | float = 0
    items: list[dict] = Field(default_factory=list)
    timeline: list[TimelineEntry] = Field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        return v if isinstance(v, str) else "pending"

    @field_validator("user_id", "store_id", "payment_status", "receipt_id", mode="before")
    @classmethod
    def _string(cls, v):
        return coerce_string(v)

    @field_validator("eta_minutes", "base_price", "options_price", "total_price", mode="before")
    @classmethod
    def _number(cls, v):
        return coerce_number(v)

    @field_validator("items", mode="before")
    @classmethod
    def _items(cls, v):
        return [i for i in v if isinstance(i, dict)] if isinstance(v, list) else []

    @field_validator("timeline", mode="before")
    @classmethod
    def _timeline(cls, v):
        entries = []
        for entry in v if isinstance(v, list) else []:
            if isinstance(entry, dict):
                entries.append(
                    {"status": coerce_string(entry.get("status")), "at": coerce_timestamp(entry.get("at"))}
                )
        return entries

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _timestamp(cls, v):
        return coerce_timestamp(v)

    @classmethod
    def from_document(cls, data: dict) -> "OrderRecord":
        return cls.model_validate(data)


class RuntimeWeights(BaseModel):
    price: float = 0.3
    rating: float = 0.5
    fee: float = 0.2
