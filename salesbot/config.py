"""Runtime configuration from environment."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _is_true(value: str | None, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _get_ms_as_s(name: str, default_ms: int) -> float:
    return _get_int(name, default_ms) / 1000


@dataclass(frozen=True)
class ConversationQueueConfig:
    """Knobs for per-chat queueing, debouncing and inactivity cleanup."""

    enabled: bool = True
    concurrency: int = 5
    task_timeout_s: float = 60.0
    wait_time_s: float = 3.0
    max_message_age_s: int = 60
    inactivity_threshold_s: int = 86400
    sweep_interval_s: int = 6 * 60 * 60

    @classmethod
    def from_env(cls) -> "ConversationQueueConfig":
        return cls(
            enabled=_is_true(os.getenv("SALESBOT_QUEUE_ENABLED"), default=True),
            concurrency=_get_int("SALESBOT_QUEUE_CONCURRENCY", 5),
            task_timeout_s=_get_ms_as_s("SALESBOT_QUEUE_TIMEOUT_MS", 60000),
            wait_time_s=_get_ms_as_s("SALESBOT_MESSAGE_WAIT_MS", 3000),
            max_message_age_s=_get_int("SALESBOT_MAX_MESSAGE_AGE_S", 60),
            inactivity_threshold_s=_get_int("SALESBOT_INACTIVITY_THRESHOLD_S", 86400),
            sweep_interval_s=_get_int("SALESBOT_SWEEP_INTERVAL_S", 6 * 60 * 60),
        )


@dataclass(frozen=True)
class BridgeConfig:
    """WebSocket bridge listener settings."""

    host: str = "127.0.0.1"
    port: int = 8765
    token: str = ""
    require_auth: bool = False
    allow_from: tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        allow_raw = os.getenv("SALESBOT_BRIDGE_ALLOW_FROM", "")
        return cls(
            host=os.getenv("SALESBOT_BRIDGE_HOST", "127.0.0.1"),
            port=_get_int("SALESBOT_BRIDGE_PORT", 8765),
            token=os.getenv("SALESBOT_BRIDGE_TOKEN", ""),
            require_auth=_is_true(os.getenv("SALESBOT_BRIDGE_REQUIRE_AUTH")),
            allow_from=tuple(s.strip() for s in allow_raw.split(",") if s.strip()),
        )
