"""
Marketplace — メニュータイトルの投影 (Projection)

メニューや店舗が書き換わった後に、検索用タイトル (…__hogun) を
最新のフィールドから再計算してメニュードキュメントへ書き戻す。

    sync_menu_title : メニュー 1 件 (作成・更新の直後に呼ぶ)
    sync_store_menus: 店舗更新の後に、その店舗の全メニュー

タイトルが変わった時、またはマーカーが欠けている時だけ書き込み、
title_v を 1 つ進めて MenuTitleSynced を発行する。
"""

import logging
import math
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from .documents import DocumentStore
from .errors import map_store_error
from .events import MENU_CHANNEL, EventPublisher, MenuTitleSynced
from .title import build_title, has_hogun_marker

logger = logging.getLogger(__name__)


def resolve_next_version(current) -> int | float:
    """数値として読めれば +1、読めなければ 1。"""
    if isinstance(current, bool) or current is None:
        return 1
    try:
        number = float(current)
    except (TypeError, ValueError):
        return 1
    if not math.isfinite(number):
        return 1
    number += 1
    return int(number) if number.is_integer() else number


async def sync_menu_title(
    store: DocumentStore,
    publisher: EventPublisher,
    menu_id: str,
    store_data: dict | None = None,
) -> str | None:
    """
    メニュー 1 件のタイトルを再計算する。

    書き込んだ場合は新しいタイトル、変化が無い / メニューが無い場合は None。
    store_data を渡すと店舗ドキュメントの再読み込みを省く。
    """
    try:
        async with store.transaction() as tx:
            snapshot = await tx.get("menus", menu_id)
            if not snapshot.exists:
                return None
            menu = snapshot.data

            if store_data is None:
                store_id = menu.get("store_id")
                owner = await tx.get("stores", store_id) if isinstance(store_id, str) and store_id else None
                store_data = owner.data if owner is not None and owner.exists else {}

            title = build_title(menu, store_data)
            current = menu.get("title")
            if current == title and has_hogun_marker(current):
                return None

            version = resolve_next_version(menu.get("title_v"))
            await tx.update("menus", menu_id, {"title": title, "title_v": version})
    except SQLAlchemyError as e:
        raise map_store_error(f"menus/{menu_id}", e) from e

    logger.info("Menu %s title synced (v%s)", menu_id, version)
    await publisher.publish(
        MENU_CHANNEL,
        MenuTitleSynced(
            menu_id=menu_id,
            title=title,
            title_v=int(version),
            timestamp=datetime.now(timezone.utc),
        ),
    )
    return title


async def sync_store_menus(store: DocumentStore, publisher: EventPublisher, store_id: str) -> int:
    """店舗に属する全メニューのタイトルを再計算し、書き込んだ件数を返す。"""
    try:
        owner = await store.get("stores", store_id)
        menus = await store.query("menus", where=("store_id", store_id))
    except SQLAlchemyError as e:
        raise map_store_error(f"stores/{store_id}/menus", e) from e

    store_data = owner.data if owner.exists else {}
    synced = 0
    for menu in menus:
        if await sync_menu_title(store, publisher, menu.id, store_data):
            synced += 1
    return synced
