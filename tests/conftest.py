import asyncio
import os

# marketplace.main はインポート時に環境変数から設定を読む
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "")

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from marketplace.aggregate import ProgressionStep
from marketplace.config import Settings
from marketplace.documents import DocumentStore
from marketplace.title import build_title

FAST_STEPS = (
    ProgressionStep("confirmed", 0.05),
    ProgressionStep("preparing", 0.1),
    ProgressionStep("completed", 0.15),
)

STORE_OPEN = {
    "name": "호건치킨",
    "region": "seoul_gangnam",
    "status": "open",
    "delivery": {"available": True, "base_fee": 3000, "rules": ["최소 주문 15000원"]},
    "rating": {"score": 4.6, "count": 120},
    "owner_uid": "test-owner",
}

STORE_CLOSED = {
    "name": "마감식당",
    "region": "seoul_gangnam",
    "status": "closed",
    "delivery": {"available": True, "base_fee": 1000},
    "owner_uid": "other-owner",
}

MENU_CHICKEN = {
    "store_id": "store-1",
    "name": "후라이드 치킨",
    "price": 10000,
    "currency": "KRW",
    "stock": 10,
    "rating": {"score": 4.5, "count": 100},
    "description": "바삭한 후라이드",
    "option_groups": [
        {
            "name": "사이즈",
            "options": [
                {"id": "large", "price": 2000, "label": "라지"},
                {"id": "regular", "price": 0, "label": "레귤러"},
            ],
        },
        {
            "name": "음료",
            "options": [
                {"id": "cola", "price": 1500, "label": "콜라"},
                {"id": "cider", "price": 1500, "label": "사이다"},
            ],
        },
        {
            "name": "소스",
            "options": [{"id": "hot", "price": 500, "label": "핫소스"}],
        },
    ],
}

MENU_SOLD_OUT = {
    "store_id": "store-1",
    "name": "양념 치킨",
    "price": 12000,
    "currency": "KRW",
    "stock": 0,
    "rating": {"score": 4.9, "count": 30},
}

MENU_CLOSED_STORE = {
    "store_id": "store-2",
    "name": "김치찌개",
    "price": 8000,
    "currency": "KRW",
    "stock": 5,
    "rating": {"score": 4.0, "count": 10},
}


def with_title(menu: dict, store: dict) -> dict:
    return {**menu, "title": build_title(menu, store), "title_v": 1}


@pytest.fixture()
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'marketplace.db'}"


@pytest.fixture()
def run(db_url):
    """DocumentStore を渡してコルーチン関数を実行する。"""

    def runner(fn):
        async def main():
            store = DocumentStore(create_async_engine(db_url))
            await store.init_schema()
            try:
                return await fn(store)
            finally:
                await store.dispose()

        return asyncio.run(main())

    return runner


@pytest.fixture()
def seed(run):
    """{(collection, id): data} をまとめて書き込む。"""

    def seeder(documents: dict):
        async def write(store):
            for (collection, doc_id), data in documents.items():
                await store.set(collection, doc_id, data)

        run(write)

    return seeder


@pytest.fixture()
def marketplace_docs():
    return {
        ("stores", "store-1"): STORE_OPEN,
        ("stores", "store-2"): STORE_CLOSED,
        ("menus", "menu-1"): with_title(MENU_CHICKEN, STORE_OPEN),
        ("menus", "menu-2"): with_title(MENU_SOLD_OUT, STORE_OPEN),
        ("menus", "menu-3"): with_title(MENU_CLOSED_STORE, STORE_CLOSED),
    }


@pytest.fixture()
def fast_steps():
    return FAST_STEPS


@pytest.fixture()
def settings(db_url):
    return Settings(
        database_url=db_url,
        redis_url="",
        bypass_auth=True,
        metrics_token="metrics-secret",
    )
