"""
Marketplace — 設定

すべて環境変数から読む。DATABASE_URL のみ必須。
"""

import os
from dataclasses import dataclass, field

DEFAULT_ALLOWED_ORIGINS = ("http://localhost:5173", "http://127.0.0.1:5173")


def _split(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"
    allowed_origins: tuple[str, ...] = field(default=DEFAULT_ALLOWED_ORIGINS)
    bypass_auth: bool = False
    bypass_auth_token: str = "test-token"
    bypass_auth_uid: str = "test-owner"
    identity_verify_url: str = ""
    rate_limit_requests: int = 60
    rate_limit_window_seconds: float = 60.0
    metrics_token: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        return cls(
            database_url=env["DATABASE_URL"],
            redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
            allowed_origins=DEFAULT_ALLOWED_ORIGINS + _split(env.get("API_ALLOWED_ORIGINS", "")),
            bypass_auth=env.get("API_BYPASS_AUTH", "false") == "true",
            bypass_auth_token=env.get("API_BYPASS_AUTH_TOKEN", "test-token"),
            bypass_auth_uid=env.get("API_BYPASS_AUTH_UID", "test-owner"),
            identity_verify_url=env.get("IDENTITY_VERIFY_URL", ""),
            rate_limit_requests=int(env.get("RATE_LIMIT_REQUESTS", "60")),
            rate_limit_window_seconds=float(env.get("RATE_LIMIT_WINDOW_SECONDS", "60")),
            metrics_token=env.get("METRICS_TOKEN", ""),
        )
