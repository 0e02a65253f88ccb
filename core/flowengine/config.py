"""Shared engine configuration.

Centralises reading of ~/.flowengine/configuration.json so that the
executor, the trigger adapters and the CLI share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_FILE = Path.home() / ".flowengine" / "configuration.json"

DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_LOOP_MAX_ITERATIONS = 1000
DEFAULT_MODEL = "gpt-4o-mini"


def get_config_path() -> Path:
    """Return the configuration file path, honouring FLOWENGINE_CONFIG."""
    override = os.environ.get("FLOWENGINE_CONFIG")
    if override:
        return Path(override).expanduser()
    return DEFAULT_CONFIG_FILE


def get_engine_settings() -> dict[str, Any]:
    """Load the raw configuration dict. Missing or unreadable files yield {}."""
    path = get_config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _section(name: str) -> dict[str, Any]:
    value = get_engine_settings().get(name, {})
    return value if isinstance(value, dict) else {}


def get_max_concurrency() -> int:
    """Per-execution bound on concurrently running node executors."""
    return int(_section("execution").get("max_concurrency", DEFAULT_MAX_CONCURRENCY))


def get_loop_max_iterations() -> int:
    return int(_section("execution").get("loop_max_iterations", DEFAULT_LOOP_MAX_ITERATIONS))


def get_http_timeout() -> float:
    return float(_section("http").get("timeout_seconds", 30.0))


def get_event_emit_timeout() -> float:
    """Upper bound on one event sink call made from inside a run."""
    return float(_section("events").get("emit_timeout_seconds", 1.0))


def get_default_model() -> str:
    return _section("agents").get("default_model", DEFAULT_MODEL)


def get_storage_path() -> str | None:
    return get_engine_settings().get("storage_path")


# ---------------------------------------------------------------------------
# EngineConfig – shared across executor, adapters and CLI
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from ~/.flowengine/configuration.json."""

    max_concurrency: int = field(default_factory=get_max_concurrency)
    loop_max_iterations: int = field(default_factory=get_loop_max_iterations)
    http_timeout_seconds: float = field(default_factory=get_http_timeout)
    event_emit_timeout_seconds: float = field(default_factory=get_event_emit_timeout)
    default_model: str = field(default_factory=get_default_model)
    webhook_host: str = field(
        default_factory=lambda: _section("webhooks").get("host", "127.0.0.1")
    )
    webhook_port: int = field(
        default_factory=lambda: int(_section("webhooks").get("port", 8080))
    )
    webhook_signature_header: str = field(
        default_factory=lambda: _section("webhooks").get(
            "signature_header", "X-Webhook-Signature"
        )
    )
    require_webhook_signature: bool = field(
        default_factory=lambda: bool(_section("webhooks").get("require_signature", False))
    )
    storage_path: str | None = field(default_factory=get_storage_path)
