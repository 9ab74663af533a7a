"""
Marketplace — FastAPI エントリーポイント

公開 API (検索・メニュー詳細・注文・自動注文) と、
店舗オーナー向け管理 API (/dashboard)、AI インデックス (/ai) を 1 つのアプリで提供する。

  ┌──────────┐    ┌─────────────────────────────────────────────┐
  │ Client   │───▶│ request-id → CORS → origin guard → metrics    │
  │          │    │   ├─ /search /menu /order /orchestrate        │
  │          │    │   ├─ /dashboard/*  (Bearer 認証)              │
  │          │    │   └─ /ai/*                                    │
  └──────────┘    └──────────────┬──────────────────────────────┘
                                 │
                    ┌────────────┴────────────┐
                    ▼                         ▼
             documents テーブル          Redis Pub/Sub
             (PostgreSQL / SQLite)      (order_events, menu_events)

Usage:
    uvicorn marketplace.main:app --host 0.0.0.0 --port 8000
"""

import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import httpx
import redis.asyncio as aioredis
from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import create_async_engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import ai_index, commands, dashboard, queries, search
from .aggregate import STATUS_SEQUENCE, ProgressionStep
from .config import Settings
from .documents import DocumentStore
from .errors import ApiError
from .events import EventPublisher
from .identity import IdentityVerifier
from .metrics import RateLimiter, attach_token_payload, load_metrics_summary, metrics_middleware
from .orchestrator import FallbackPolicy, OrchestrationPipeline, mock_response
from .progression import ProgressionScheduler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

LOCAL_ORIGIN = re.compile(r"^http://(localhost|127\.0\.0\.1)")


def is_origin_allowed(origin: str, allowed: tuple[str, ...]) -> bool:
    return origin in allowed or bool(LOCAL_ORIGIN.match(origin))


def _parse_limit(raw: str | None) -> int | None:
    if raw is None:
        return None
    match = re.match(r"^\s*[+-]?\d+", raw)
    return int(match.group()) if match else None


def _error_response(request: Request, error: ApiError) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    logger.warning(
        "[%s] ✖ %s %s -> %s %s", request_id, request.method, request.url.path, error.status, error.code
    )
    return JSONResponse(error.to_payload(request_id), status_code=error.status)


def create_app(
    settings: Settings | None = None,
    redis: aioredis.Redis | None = None,
    identity_transport: httpx.AsyncBaseTransport | None = None,
    progression_steps: tuple[ProgressionStep, ...] = STATUS_SEQUENCE,
    poll_interval: float = 5.0,
    poll_timeout: float = 60.0,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_async_engine(settings.database_url, echo=False)
        store = DocumentStore(engine)
        await store.init_schema()

        redis_pool = redis
        owns_redis = False
        if redis_pool is None and settings.redis_url:
            redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
            owns_redis = True

        publisher = EventPublisher(redis_pool)
        scheduler = ProgressionScheduler(store, publisher, progression_steps)
        pipeline = OrchestrationPipeline(
            store, publisher, scheduler, poll_interval=poll_interval, poll_timeout=poll_timeout
        )

        app.state.store = store
        app.state.publisher = publisher
        app.state.scheduler = scheduler
        app.state.fallback = FallbackPolicy(pipeline)
        logger.info("Marketplace API started (%s)", store.dialect)
        yield

        await scheduler.shutdown()
        if owns_redis:
            await redis_pool.aclose()
        await store.dispose()

    app = FastAPI(title="Marketplace API", lifespan=lifespan)
    app.state.settings = settings
    app.state.rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)
    app.state.identity = IdentityVerifier(
        settings.identity_verify_url,
        bypass_enabled=settings.bypass_auth,
        bypass_token=settings.bypass_auth_token,
        bypass_uid=settings.bypass_auth_uid,
        transport=identity_transport,
    )

    # ── ミドルウェア (後に追加したものほど外側) ───────

    app.middleware("http")(metrics_middleware)

    @app.middleware("http")
    async def origin_guard(request: Request, call_next):
        origin = request.headers.get("origin")
        if origin and not is_origin_allowed(origin, settings.allowed_origins):
            return _error_response(
                request,
                ApiError(
                    "cors/not-allowed",
                    "허용되지 않은 출처입니다.",
                    "API_ALLOWED_ORIGINS 환경 변수를 업데이트해주세요.",
                ),
            )
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_origin_regex=LOCAL_ORIGIN.pattern + ".*",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid4())
        request.state.request_id = request_id
        logger.info("[%s] ➜ %s %s", request_id, request.method, request.url.path)
        response = await call_next(request)
        response.headers["x-request-id"] = request_id
        logger.info("[%s] ⇦ %s %s %s", request_id, response.status_code, request.method, request.url.path)
        return response

    # ── 例外ハンドラ ─────────────────────────────

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return _error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            request,
            ApiError(
                "request/invalid-payload",
                "요청 형식이 올바르지 않습니다.",
                "JSON 본문과 파라미터를 확인해주세요.",
                {"errors": [error.get("msg") for error in exc.errors()]},
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            error = ApiError(
                "route/not-found", "요청한 API 경로를 찾을 수 없습니다.", "엔드포인트 경로를 다시 확인해주세요."
            )
        elif exc.status_code == 405:
            error = ApiError("route/method-not-allowed", "지원하지 않는 HTTP 메서드입니다.")
        else:
            error = ApiError("internal/error", str(exc.detail), status=exc.status_code)
        return _error_response(request, error)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(
            request, ApiError("internal/error", "요청 처리 중 오류가 발생했습니다.", str(exc) or None)
        )

    # ── 公開 API ─────────────────────────────────

    @app.get("/health")
    async def health():
        return {"ok": True, "ts": datetime.now(timezone.utc).isoformat()}

    @app.get("/search")
    async def search_titles(
        request: Request,
        region: str | None = None,
        keyword: str | None = None,
        limit: str | None = None,
    ):
        results = await search.search_menus(
            request.app.state.store, region=region, keyword=keyword, limit=_parse_limit(limit)
        )
        titles = [r.menu.title or r.menu.name for r in results]
        titles = [title for title in titles if title]
        attach_token_payload(request, titles)
        return {"titles": titles}

    @app.get("/menu/{menu_id}")
    async def menu_detail(request: Request, menu_id: str):
        context = await queries.fetch_menu_with_store(request.app.state.store, menu_id)
        menu, owner = context.menu, context.store
        return {
            "title": menu.title or menu.name,
            "content": {
                "option_groups": menu.option_groups,
                "description": menu.description or "",
                "delivery": {"rules": owner.delivery.rules},
                "rating": menu.rating.model_dump(),
            },
        }

    @app.post("/order", status_code=201)
    async def place_order(request: Request, payload: Any = Body(default=None)):
        state = request.app.state
        return await commands.create_order(state.store, state.publisher, state.scheduler, payload)

    @app.get("/order/{order_id}/status")
    async def order_status(request: Request, order_id: str):
        return await queries.get_order_status(request.app.state.store, order_id)

    @app.post("/orchestrate")
    async def orchestrate(request: Request, payload: Any = Body(default=None)):
        return await request.app.state.fallback.run(payload)

    @app.post("/mock/orchestrate")
    async def mock_orchestrate():
        return mock_response()

    @app.get("/metrics")
    async def metrics_summary(request: Request, shard: str | None = None):
        token = settings.metrics_token
        if not token or request.headers.get("authorization") != f"Bearer {token}":
            raise ApiError("metrics/unauthorized", "메트릭 조회 권한이 없습니다.", "METRICS_TOKEN을 확인해주세요.")
        return await load_metrics_summary(request.app.state.store, shard)

    app.include_router(dashboard.router)
    app.include_router(ai_index.router)
    return app


app = create_app()
