"""运行配置：全部来自环境变量，非法值快速失败。"""

from __future__ import annotations

import os
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_DB_PATH = REPO_ROOT / "backend" / "data" / "shotlink.db"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name}={raw!r} 非法：必须为数字。") from exc
    if value < 0:
        raise RuntimeError(f"{name}={raw!r} 非法：不能为负数。")
    return value


def kuzu_db_path() -> Path:
    env_path = os.getenv("KUZU_DB_PATH")
    if not env_path:
        return DEFAULT_DB_PATH
    candidate = Path(env_path)
    return candidate if candidate.is_absolute() else REPO_ROOT / candidate


def sync_debounce_seconds() -> float:
    return _env_float("CONTINUITY_SYNC_DEBOUNCE_MS", 500) / 1000


def sync_retry_seconds() -> float:
    return _env_float("CONTINUITY_SYNC_RETRY_MS", 2000) / 1000


def sync_max_retry_seconds() -> float:
    return _env_float("CONTINUITY_SYNC_MAX_RETRY_MS", 30000) / 1000


def sync_timeout_seconds() -> float:
    return _env_float("CONTINUITY_SYNC_TIMEOUT_SECONDS", 10)


def sync_url() -> str | None:
    raw = os.getenv("CONTINUITY_SYNC_URL")
    if raw is None or not raw.strip():
        return None
    return raw.strip().rstrip("/")


def log_level() -> str:
    level = os.getenv("SHOTLINK_LOG_LEVEL", "INFO").strip().upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise RuntimeError(f"SHOTLINK_LOG_LEVEL={level!r} 非法。")
    return level
