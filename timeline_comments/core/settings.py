from __future__ import annotations

import os
from dataclasses import dataclass, field


def parse_limit(raw: str) -> tuple[int, int]:
    """Parse a "max/window_ms" rate limit spec, e.g. "10/60000"."""
    max_s, _, window_s = raw.strip().partition("/")
    max_count = int(max_s)
    window_ms = int(window_s) if window_s else 60000
    if max_count < 1 or window_ms < 1:
        raise ValueError(f"Invalid rate limit: {raw!r}")
    return max_count, window_ms


@dataclass(frozen=True)
class Settings:
    app_env: str
    db_path: str
    remote_database_url: str
    identity_api_key: str
    identity_base_url: str
    remote_timeout: float
    navigation_interval: float
    resolve_interval: float
    resolve_max_attempts: int
    poll_interval: float
    rate_limits: dict[str, tuple[int, int]] = field(default_factory=dict)

    @staticmethod
    def from_env() -> "Settings":
        def _f(name: str, default: str) -> float:
            return float(os.getenv(name, default).strip())

        def _i(name: str, default: str) -> int:
            return int(os.getenv(name, default).strip())

        return Settings(
            app_env=os.getenv("APP_ENV", "dev").strip(),
            db_path=os.getenv("DB_PATH", "/app/_local/data/timeline.db").strip(),
            remote_database_url=os.getenv(
                "REMOTE_DATABASE_URL",
                "https://timeline-content-extension-default-rtdb.firebaseio.com",
            ).strip().rstrip("/"),
            identity_api_key=os.getenv("IDENTITY_API_KEY", "").strip(),
            identity_base_url=os.getenv(
                "IDENTITY_BASE_URL", "https://identitytoolkit.googleapis.com/v1"
            ).strip().rstrip("/"),
            remote_timeout=_f("REMOTE_TIMEOUT", "15"),
            navigation_interval=_f("NAVIGATION_INTERVAL", "1.0"),
            resolve_interval=_f("RESOLVE_INTERVAL", "0.5"),
            resolve_max_attempts=_i("RESOLVE_MAX_ATTEMPTS", "10"),
            poll_interval=_f("POLL_INTERVAL", "10.0"),
            rate_limits={
                "comment": parse_limit(os.getenv("RATE_LIMIT_COMMENT", "10/60000")),
                "like": parse_limit(os.getenv("RATE_LIMIT_LIKE", "30/60000")),
                "reply": parse_limit(os.getenv("RATE_LIMIT_REPLY", "20/60000")),
            },
        )
