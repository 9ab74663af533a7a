"""
Marketplace — エラー定義

API 境界で返すエラーはすべて ApiError に正規化する。
レスポンスは {request_id, code, message, hint?, details?} の形で統一する。

注文ドラフトのビジネスルール違反 (E01/E02/E03) は OrderValidationError として
別に扱い、注文作成フローで代替メニューを付与してから ApiError (409) に変換する。
"""

from typing import Any

STATUS_BY_CODE: dict[str, int] = {
    "E01": 409,
    "E02": 409,
    "E03": 409,
    "auth/unauthorized": 401,
    "auth/forbidden": 403,
    "order/invalid-payload": 400,
    "order/invalid-user": 400,
    "order/empty-items": 400,
    "order/invalid-item": 400,
    "order/missing-menu": 400,
    "order/invalid-quantity": 400,
    "order/invalid-id": 400,
    "order/multiple-stores": 400,
    "order/not-found": 404,
    "order/missing-store": 500,
    "menu/not-found": 404,
    "menu/missing-store": 500,
    "menu/invalid-payload": 400,
    "store/not-found": 404,
    "store/invalid-payload": 400,
    "store/unauthorized": 403,
    "storage/error": 500,
    "orchestrate/invalid-payload": 400,
    "orchestrate/no-candidates": 404,
    "orchestrate/order-failed": 500,
    "orchestrate/order-cancelled": 409,
    "orchestrate/order-timeout": 504,
    "orchestrate/order-summary-failed": 500,
    "metrics/unauthorized": 401,
    "rate-limit/exceeded": 429,
    "cors/not-allowed": 403,
    "ai/not-found": 404,
    "ai/internal-error": 500,
    "request/invalid-payload": 400,
    "route/not-found": 404,
    "route/method-not-allowed": 405,
    "internal/error": 500,
}


class ApiError(Exception):
    """HTTP 境界まで伝播させるアプリケーションエラー"""

    def __init__(
        self,
        code: str,
        message: str,
        hint: str | None = None,
        details: dict[str, Any] | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.hint = hint
        self.details = details
        self.status = status or STATUS_BY_CODE.get(code, 500)

    def to_payload(self, request_id: str | None = None) -> dict:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if request_id:
            payload["request_id"] = request_id
        if self.hint:
            payload["hint"] = self.hint
        if self.details:
            payload["details"] = self.details
            if "alternatives" in self.details:
                payload["alternatives"] = self.details["alternatives"]
        return payload


class OrderValidationError(Exception):
    """
    注文ドラフトのビジネスルール違反。

        E01: 품절 (在庫切れ)
        E02: 마감 (店舗が営業していない)
        E03: 배달 불가 (配達不可)
    """

    def __init__(self, code: str, message: str, store, menu=None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.store = store
        self.menu = menu


def map_store_error(context: str, error: Exception) -> ApiError:
    """ストレージ層の例外をコンテキスト付きの ApiError に変換する。"""
    message = str(error) or "알 수 없는 저장소 오류가 발생했습니다."
    return ApiError(
        "storage/error",
        f"저장소({context}) 요청 중 오류가 발생했습니다.",
        hint=message,
    )
