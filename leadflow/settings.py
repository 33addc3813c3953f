from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


DEFAULT_SQLITE_PATH = "data/leadflow.db"


@dataclass(slots=True)
class EngineSettings:
    sqlite_path: Path = Path(DEFAULT_SQLITE_PATH)
    max_node_visits: int = 1000
    script_timeout_ms: int = 5000
    webhook_timeout_ms: int = 30000
    webhook_max_retries: int = 3
    webhook_initial_delay_ms: int = 1000
    webhook_backoff_multiplier: float = 2.0
    event_window_seconds: int = 300
    loop_max_iterations: int = 100
    large_graph_warning_threshold: int = 50



def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default



def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default



def load_settings() -> EngineSettings:
    load_dotenv()

    sqlite_path = Path(os.getenv("LEADFLOW_SQLITE_PATH", DEFAULT_SQLITE_PATH)).expanduser()

    settings = EngineSettings(
        sqlite_path=sqlite_path,
        max_node_visits=max(1, _get_int("LEADFLOW_MAX_NODE_VISITS", 1000)),
        script_timeout_ms=max(1, _get_int("LEADFLOW_SCRIPT_TIMEOUT_MS", 5000)),
        webhook_timeout_ms=max(1, _get_int("LEADFLOW_WEBHOOK_TIMEOUT_MS", 30000)),
        webhook_max_retries=max(0, _get_int("LEADFLOW_WEBHOOK_MAX_RETRIES", 3)),
        webhook_initial_delay_ms=max(0, _get_int("LEADFLOW_WEBHOOK_INITIAL_DELAY_MS", 1000)),
        webhook_backoff_multiplier=_get_float("LEADFLOW_WEBHOOK_BACKOFF_MULTIPLIER", 2.0),
        event_window_seconds=max(1, _get_int("LEADFLOW_EVENT_WINDOW_SECONDS", 300)),
        loop_max_iterations=max(1, _get_int("LEADFLOW_LOOP_MAX_ITERATIONS", 100)),
        large_graph_warning_threshold=max(1, _get_int("LEADFLOW_LARGE_GRAPH_WARNING", 50)),
    )

    settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return settings
