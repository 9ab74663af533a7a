"""
Marketplace — レート制限と API メトリクス

リクエストごとに:
  1. クライアントキー (x-forwarded-for の先頭 → 接続元 IP → "unknown") で
     固定ウィンドウのレート制限をかける (超過で 429)
  2. レスポンス後に metrics/{YYYY-MM-DD} (日次シャード) の
     api[ルート] = {count, avg_ms, fail} をトランザクションで更新する
  3. /search の応答ではタイトル一覧と冗長な JSON のトークン数を比べ、
     token_savings.latest に最新サンプルを残す

メトリクスの記録に失敗してもリクエストは失敗させない (ログのみ)。
"""

import json
import logging
import math
import time
from datetime import datetime, timezone

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .documents import DocumentStore
from .errors import ApiError, map_store_error

logger = logging.getLogger(__name__)

METRICS_COLLECTION = "metrics"
SEARCH_ROUTE = "/search"


class RateLimiter:
    """
    キーごとの固定ウィンドウ・カウンタ。window は秒。

    期限切れのウィンドウは 1 ウィンドウに 1 回まとめて捨てるため、
    保持するキー数は直近 2 ウィンドウで見えたクライアント数までに収まる。
    """

    def __init__(self, limit: int, window: float) -> None:
        self.limit = limit
        self.window = window
        self._buckets: dict[str, list[float]] = {}
        self._last_sweep: float | None = None

    def __len__(self) -> int:
        return len(self._buckets)

    def _evict_expired(self, now: float) -> None:
        if self._last_sweep is not None and now - self._last_sweep < self.window:
            return
        self._last_sweep = now
        expired = [key for key, (_, started) in self._buckets.items() if now - started >= self.window]
        for key in expired:
            del self._buckets[key]

    def try_consume(self, key: str, now: float) -> bool:
        key = key or "unknown"
        self._evict_expired(now)
        bucket = self._buckets.get(key)

        if bucket is None or now - bucket[1] >= self.window:
            self._buckets[key] = [1, now]
            return True

        if bucket[0] >= self.limit:
            return False

        bucket[0] += 1
        return True


def estimate_tokens(value: str) -> int:
    """4 文字 ≒ 1 トークンとして切り上げる。"""
    if not value:
        return 0
    return math.ceil(len(value) / 4)


def calculate_token_savings(optimized: str, baseline: str, timestamp: datetime | None = None) -> dict | None:
    optimized_tokens = estimate_tokens(optimized)
    baseline_tokens = estimate_tokens(baseline)
    if baseline_tokens <= 0:
        return None

    ratio = (baseline_tokens - optimized_tokens) / baseline_tokens
    captured_at = timestamp or datetime.now(timezone.utc)
    return {
        "optimized_tokens": optimized_tokens,
        "baseline_tokens": baseline_tokens,
        "savings_ratio": round(ratio, 4),
        "savings_percent": round(ratio * 100, 2),
        "captured_at": captured_at.isoformat(),
    }


def build_search_token_payload(titles: list) -> tuple[str, str]:
    """検索応答 {titles} と、同じ内容を冗長に表した JSON の組を返す。"""
    titles = [title for title in titles if isinstance(title, str)]
    compact = {"separators": (",", ":"), "ensure_ascii": False}
    optimized = json.dumps({"titles": titles}, **compact)
    baseline = json.dumps(
        {"baemin_like_json": [{"title": title, "content": title} for title in titles]},
        **compact,
    )
    return optimized, baseline


def attach_token_payload(request: Request, titles: list) -> None:
    request.state.metrics_token_payload = build_search_token_payload(titles)


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def shard_id(now: datetime | None = None) -> str:
    return (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")


async def record_metrics(
    store: DocumentStore,
    shard: str,
    route: str,
    duration_ms: float,
    failed: bool,
    token_payload: tuple[str, str] | None = None,
) -> None:
    try:
        async with store.transaction() as tx:
            snapshot = await tx.get(METRICS_COLLECTION, shard)
            api = snapshot.data.get("api") if snapshot.exists else None
            api = api if isinstance(api, dict) else {}

            current = api.get(route) or {}
            count = current.get("count", 0)
            next_count = count + 1
            total = current.get("avg_ms", 0) * count + duration_ms

            updated: dict = {
                "api": {
                    **api,
                    route: {
                        "count": next_count,
                        "avg_ms": round(total / next_count, 2),
                        "fail": current.get("fail", 0) + (1 if failed else 0),
                    },
                }
            }

            if token_payload is not None:
                sample = calculate_token_savings(*token_payload)
                if sample:
                    updated["token_savings"] = {"latest": sample}

            await tx.set(METRICS_COLLECTION, shard, updated, merge=True)
    except Exception:
        logger.exception("Failed to record metrics for %s", route)


async def load_metrics_summary(store: DocumentStore, shard: str | None = None) -> dict:
    target = shard or shard_id()
    try:
        snapshot = await store.get(METRICS_COLLECTION, target)
    except SQLAlchemyError as e:
        raise map_store_error(f"metrics/{target}", e) from e
    return {"shard": target, **(snapshot.data if snapshot.exists else {})}


async def metrics_middleware(request: Request, call_next):
    if request.method == "OPTIONS":
        return await call_next(request)

    limiter: RateLimiter = request.app.state.rate_limiter
    if not limiter.try_consume(client_key(request), time.monotonic()):
        error = ApiError("rate-limit/exceeded", "요청 한도를 초과했습니다.", "잠시 후 다시 시도해주세요.")
        request_id = getattr(request.state, "request_id", None)
        return JSONResponse(error.to_payload(request_id), status_code=error.status)

    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000

    route = request.url.path or "unknown"
    token_payload = getattr(request.state, "metrics_token_payload", None)
    await record_metrics(
        request.app.state.store,
        shard_id(),
        route,
        duration_ms,
        response.status_code >= 400,
        token_payload if route == SEARCH_ROUTE else None,
    )
    return response
