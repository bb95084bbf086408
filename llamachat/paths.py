# llamachat/paths.py
from __future__ import annotations
import os
from pathlib import Path
from typing import Tuple
from .constants import CHATS_FILENAME

def default_data_dir() -> Path:
    # Local "data" folder by default; override via env LLAMACHAT_DATA_DIR.
    env = os.getenv("LLAMACHAT_DATA_DIR")
    if env:
        return Path(env).expanduser().resolve()
    return Path("data").resolve()

def log_paths(data_dir: Path) -> Tuple[Path, Path]:
    logs_dir = data_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return logs_dir, logs_dir / "app.log"

def chats_path(data_dir: Path) -> Path:
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / CHATS_FILENAME

def settings_dir(project_root: Path | None = None) -> Path:
    # Non-sensitive JSON settings live here.
    base = Path(project_root) if project_root else Path(".")
    s = base.resolve() / "settings"
    s.mkdir(parents=True, exist_ok=True)
    return s
