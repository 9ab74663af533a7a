"""
Marketplace — ドキュメントストア

stores / menus / orders / settings / metrics をスキーマレスな JSON ドキュメントとして
1 つの documents テーブルに保存する。コレクション + ID で一意。

    get / get_many      : ID 指定の読み取り (get_many は並列)
    scan / query        : コレクション単位のスキャンと等価条件クエリ
    add / set / delete  : 書き込み (created_at / updated_at はストア側で付与)
    transaction()       : 単一ドキュメントの read-modify-write

PostgreSQL では SELECT ... FOR UPDATE で行ロックを取る。
SQLite は書き込みが 1 本しか走れないため、プロセス内で書き込みを直列化する。
"""

import asyncio
import json
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ORDER_COLUMNS = {"created_at", "updated_at"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _merge(base: dict, patch: dict) -> dict:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass
class DocumentSnapshot:
    collection: str
    id: str
    exists: bool
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """ID を含めたフィールドマップを返す。"""
        return {"id": self.id, **self.data}


def _snapshot(collection: str, doc_id: str, row) -> DocumentSnapshot:
    if not row:
        return DocumentSnapshot(collection, doc_id, False)
    data = json.loads(row.data) if isinstance(row.data, str) else dict(row.data)
    data["created_at"] = row.created_at
    data["updated_at"] = row.updated_at
    return DocumentSnapshot(collection, doc_id, True, data)


class Transaction:
    """transaction() の中でだけ使う読み書きハンドル"""

    def __init__(self, store: "DocumentStore", session: AsyncSession) -> None:
        self._store = store
        self._session = session

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        return await self._store._fetch(self._session, collection, doc_id, lock=True)

    async def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        await self._store._write(self._session, collection, doc_id, data, merge)

    async def update(self, collection: str, doc_id: str, fields: dict) -> None:
        """既存ドキュメントのトップレベルフィールドを置き換える。"""
        current = await self._store._fetch(self._session, collection, doc_id)
        if not current.exists:
            raise LookupError(f"{collection}/{doc_id} does not exist")
        data = {k: v for k, v in current.data.items() if k not in _ORDER_COLUMNS}
        data.update(fields)
        await self._store._write(self._session, collection, doc_id, data, merge=False)


class DocumentStore:
    """SQLAlchemy AsyncEngine 上のドキュメントストア"""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        self.dialect = engine.dialect.name
        self._write_lock = asyncio.Lock() if self.dialect == "sqlite" else None

    async def init_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.execute(
                text("""
                    CREATE TABLE IF NOT EXISTS documents (
                        collection VARCHAR(64) NOT NULL,
                        id VARCHAR(64) NOT NULL,
                        data TEXT NOT NULL,
                        created_at VARCHAR(40) NOT NULL,
                        updated_at VARCHAR(40) NOT NULL,
                        PRIMARY KEY (collection, id)
                    )
                """)
            )

    async def dispose(self) -> None:
        await self.engine.dispose()

    # ── 読み取り ──────────────────────────────────

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot:
        async with self.session_factory() as session:
            return await self._fetch(session, collection, doc_id)

    async def get_many(self, collection: str, doc_ids: list[str]) -> list[DocumentSnapshot]:
        """ID ごとに 1 回ずつ並列で読み取る。順序は doc_ids と同じ。"""
        return list(await asyncio.gather(*(self.get(collection, i) for i in doc_ids)))

    async def scan(self, collection: str, limit: int | None = None) -> list[DocumentSnapshot]:
        return await self.query(collection, limit=limit)

    async def query(
        self,
        collection: str,
        where: tuple[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]:
        """
        コレクション内を等価条件で絞り込む。

        where は (フィールド名, 値) の 1 組だけをサポートする。
        order_by は created_at / updated_at のみ。
        """
        sql = "SELECT id, data, created_at, updated_at FROM documents WHERE collection = :collection"
        params: dict[str, Any] = {"collection": collection}

        if where is not None:
            field_name, value = where
            if not _FIELD_NAME.match(field_name):
                raise ValueError(f"invalid field name: {field_name!r}")
            if self.dialect == "postgresql":
                sql += " AND (CAST(data AS JSONB) ->> :field) = :value"
                params["field"] = field_name
            else:
                sql += " AND json_extract(data, :path) = :value"
                params["path"] = f"$.{field_name}"
            params["value"] = str(value)

        if order_by is not None:
            if order_by not in _ORDER_COLUMNS:
                raise ValueError(f"unsupported order column: {order_by!r}")
            sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}, id ASC"
        else:
            sql += " ORDER BY created_at ASC, id ASC"

        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = int(limit)

        async with self.session_factory() as session:
            result = await session.execute(text(sql), params)
            return [_snapshot(collection, row.id, row) for row in result.fetchall()]

    # ── 書き込み ──────────────────────────────────

    async def add(self, collection: str, data: dict) -> str:
        """ストア側で ID を払い出して新規作成する。"""
        doc_id = uuid4().hex
        await self.set(collection, doc_id, data)
        return doc_id

    async def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        async with self._writing() as session:
            await self._write(session, collection, doc_id, data, merge)

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self._writing() as session:
            await session.execute(
                text("DELETE FROM documents WHERE collection = :collection AND id = :id"),
                {"collection": collection, "id": doc_id},
            )

    @asynccontextmanager
    async def transaction(self):
        """
        単一ドキュメントの read-modify-write 用トランザクション。

        ブロックを抜けるとコミット、例外が出るとロールバックする。
        """
        async with self._writing() as session:
            yield Transaction(self, session)

    # ── 内部処理 ──────────────────────────────────

    @asynccontextmanager
    async def _writing(self):
        if self._write_lock is None:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
            return

        async with self._write_lock:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session

    async def _fetch(
        self,
        session: AsyncSession,
        collection: str,
        doc_id: str,
        lock: bool = False,
    ) -> DocumentSnapshot:
        sql = (
            "SELECT id, data, created_at, updated_at FROM documents"
            " WHERE collection = :collection AND id = :id"
        )
        if lock and self.dialect == "postgresql":
            sql += " FOR UPDATE"
        result = await session.execute(text(sql), {"collection": collection, "id": doc_id})
        return _snapshot(collection, doc_id, result.fetchone())

    async def _write(
        self,
        session: AsyncSession,
        collection: str,
        doc_id: str,
        data: dict,
        merge: bool,
    ) -> None:
        payload = {k: v for k, v in data.items() if k not in _ORDER_COLUMNS}
        if merge:
            current = await self._fetch(session, collection, doc_id, lock=True)
            if current.exists:
                base = {k: v for k, v in current.data.items() if k not in _ORDER_COLUMNS}
                payload = _merge(base, payload)

        now = _now()
        await session.execute(
            text("""
                INSERT INTO documents (collection, id, data, created_at, updated_at)
                VALUES (:collection, :id, :data, :now, :now)
                ON CONFLICT (collection, id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """),
            {
                "collection": collection,
                "id": doc_id,
                "data": json.dumps(payload, default=str, ensure_ascii=False),
                "now": now,
            },
        )
