# llamachat/settings.py
from __future__ import annotations
import copy
import json
from pathlib import Path
from typing import Any, Dict
from .constants import (
    DEFAULT_LOG_MAX_BYTES, DEFAULT_LOG_BACKUP_COUNT,
    DEFAULT_OLLAMA, DEFAULT_CONNECT_TIMEOUT, DEFAULT_IDLE_TIMEOUT,
)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "schema": 1,
    "logging": {
        "level": "INFO",
        "max_bytes": DEFAULT_LOG_MAX_BYTES,
        "backup_count": DEFAULT_LOG_BACKUP_COUNT
    },
    "ollama": {
        "base_url": DEFAULT_OLLAMA,
        "connect_timeout": DEFAULT_CONNECT_TIMEOUT,
        "idle_timeout": DEFAULT_IDLE_TIMEOUT,
        "incomplete_policy": "error"     # "error" | "complete"
    },
    "chat": {
        "default_model": "llama3",
        "system_prompt": "",
        "options": {"temperature": 0.7}
    }
}

def load_settings(path: Path) -> dict:
    if not path.exists():
        save_settings(path, DEFAULT_SETTINGS)
        return copy.deepcopy(DEFAULT_SETTINGS)
    with path.open("r", encoding="utf-8") as f:
        cfg = json.load(f)
    # Simple forward-fill of missing keys
    def merge(a: dict, b: dict):
        for k, v in b.items():
            if k not in a:
                a[k] = copy.deepcopy(v)
            elif isinstance(v, dict) and isinstance(a.get(k), dict):
                merge(a[k], v)
    merged = dict(cfg)
    merge(merged, DEFAULT_SETTINGS)
    return merged

def save_settings(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)
    tmp.replace(path)
