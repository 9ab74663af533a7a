"""
Marketplace — 管理 API の認証

Authorization: Bearer <token> を ID プロバイダの検証エンドポイントに問い合わせ、
店舗オーナーの uid を得る。

    POST {IDENTITY_VERIFY_URL}  {"token": "..."}  →  200 {"uid": "..."}

ローカル開発では API_BYPASS_AUTH=true の時だけ、固定トークンを固定 uid として通す。
"""

import httpx
from fastapi import Request

from .errors import ApiError

BEARER_PREFIX = "Bearer "


def _login_required() -> ApiError:
    return ApiError("auth/unauthorized", "로그인이 필요합니다.", "인증 토큰을 포함해주세요.")


class IdentityVerifier:
    def __init__(
        self,
        verify_url: str = "",
        bypass_enabled: bool = False,
        bypass_token: str = "test-token",
        bypass_uid: str = "test-owner",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.verify_url = verify_url
        self.bypass_enabled = bypass_enabled
        self.bypass_token = bypass_token
        self.bypass_uid = bypass_uid
        self.transport = transport

    async def verify(self, token: str) -> str:
        if self.bypass_enabled and token == self.bypass_token:
            return self.bypass_uid

        if not self.verify_url:
            raise ApiError(
                "auth/unauthorized",
                "토큰 검증에 실패했습니다.",
                "IDENTITY_VERIFY_URL 환경 변수를 설정해주세요.",
            )

        async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
            resp = await client.post(self.verify_url, json={"token": token})
            if resp.status_code in (400, 401, 403):
                raise ApiError("auth/unauthorized", "토큰 검증에 실패했습니다.", "다시 로그인 후 시도해주세요.")
            resp.raise_for_status()
            body = resp.json()

        uid = body.get("uid") if isinstance(body, dict) else None
        if not isinstance(uid, str) or not uid:
            raise ApiError("auth/unauthorized", "토큰 검증에 실패했습니다.", "다시 로그인 후 시도해주세요.")
        return uid


def extract_bearer_token(header: str | None) -> str:
    if not header or not header.startswith(BEARER_PREFIX):
        raise _login_required()
    token = header[len(BEARER_PREFIX):].strip()
    if not token:
        raise _login_required()
    return token


async def require_owner(request: Request) -> str:
    """FastAPI の依存関係。検証済みのオーナー uid を返す。"""
    token = extract_bearer_token(request.headers.get("authorization"))
    verifier: IdentityVerifier = request.app.state.identity
    return await verifier.verify(token)
