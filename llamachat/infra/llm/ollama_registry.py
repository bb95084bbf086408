# llamachat/infra/llm/ollama_registry.py
from __future__ import annotations
import json, time, logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional
import requests

from llamachat.constants import DEFAULT_OLLAMA
from .errors import EndpointError
from .ndjson import LineBuffer
from .ollama_client import check_status, transport_error

log = logging.getLogger("models")

REGISTRY_PATH = Path("settings/models.json")


@dataclass
class ModelInfo:
    name: str
    size: int = 0
    digest: str = ""
    modified_at: Optional[str] = None
    parameter_size: Optional[str] = None
    quantization_level: Optional[str] = None
    format: Optional[str] = None

    @classmethod
    def from_tag(cls, m: Dict[str, Any]) -> "ModelInfo":
        details = m.get("details") if isinstance(m.get("details"), dict) else {}
        return cls(
            name=m["name"],
            size=int(m.get("size") or 0),
            digest=m.get("digest") or "",
            modified_at=m.get("modified_at"),
            parameter_size=details.get("parameter_size"),
            quantization_level=details.get("quantization_level"),
            format=details.get("format"),
        )


@dataclass
class PullProgress:
    status: str
    digest: Optional[str] = None
    total: Optional[int] = None
    completed: Optional[int] = None

    @property
    def fraction(self) -> Optional[float]:
        if not self.total or self.completed is None:
            return None
        return min(1.0, self.completed / self.total)


def _http(session):
    return session if session is not None else requests


def list_models(base_url: str = DEFAULT_OLLAMA, *, session=None, timeout: float = 5) -> List[ModelInfo]:
    url = f"{base_url.rstrip('/')}/api/tags"
    try:
        r = _http(session).get(url, timeout=timeout)
    except requests.RequestException as e:
        log.error("Error fetching models: %s", e)
        raise transport_error(e, url) from e
    with r:
        check_status(r)
        try:
            data = r.json()
        except ValueError as e:
            raise EndpointError(f"Invalid JSON from {url}", status=r.status_code) from e
    if not isinstance(data, dict):
        raise EndpointError(f"Unexpected response shape from {url}", status=r.status_code)
    models = []
    for m in data.get("models") or []:
        if isinstance(m, dict) and m.get("name"):
            models.append(ModelInfo.from_tag(m))
    return models


def pull_model(name: str, base_url: str = DEFAULT_OLLAMA, *, session=None,
               on_progress: Optional[Callable[[PullProgress], None]] = None,
               timeout=(5, 600)) -> str:
    """
    Pull ``name`` and report each progress record. Returns the last status
    (normally "success"). A progress record carrying "error" raises EndpointError.
    """
    if not (name or "").strip():
        raise ValueError("model name must be a non-empty string")
    url = f"{base_url.rstrip('/')}/api/pull"
    last = ""
    try:
        r = _http(session).post(url, json={"name": name}, stream=True, timeout=timeout)
        with r:
            check_status(r)
            buf = LineBuffer()
            for chunk in r.iter_content(chunk_size=None):
                for line in buf.feed(chunk):
                    last = _on_pull_line(line, on_progress) or last
            for line in buf.flush():
                last = _on_pull_line(line, on_progress) or last
    except requests.RequestException as e:
        log.error("Error pulling model %s: %s", name, e)
        raise transport_error(e, url) from e
    log.info("Pulled model %s (%s)", name, last or "no status")
    return last


def _on_pull_line(line: str, on_progress) -> Optional[str]:
    try:
        obj = json.loads(line)
    except ValueError:
        log.warning("Skipping malformed pull record: %.120s", line)
        return None
    if not isinstance(obj, dict):
        return None
    if obj.get("error"):
        raise EndpointError(str(obj["error"]))
    prog = PullProgress(
        status=str(obj.get("status") or ""),
        digest=obj.get("digest"),
        total=obj.get("total"),
        completed=obj.get("completed"),
    )
    if on_progress:
        on_progress(prog)
    return prog.status


def delete_model(name: str, base_url: str = DEFAULT_OLLAMA, *, session=None, timeout: float = 10) -> None:
    if not (name or "").strip():
        raise ValueError("model name must be a non-empty string")
    url = f"{base_url.rstrip('/')}/api/delete"
    try:
        r = _http(session).delete(url, json={"name": name}, timeout=timeout)
    except requests.RequestException as e:
        log.error("Error deleting model %s: %s", name, e)
        raise transport_error(e, url) from e
    with r:
        check_status(r)
    log.info("Deleted model %s", name)


def refresh_registry(base_url: str = DEFAULT_OLLAMA, registry_path: Path = REGISTRY_PATH, *,
                     session=None) -> Dict[str, Any]:
    reg = _load_registry(registry_path)
    now = int(time.time())

    try:
        runtime = {m.name: m for m in list_models(base_url, session=session, timeout=2)}
    except Exception as e:
        log.warning("Ollama not reachable (%s). Using cached models.", e)
        for m in reg["models"]:
            m["available"] = False
        reg["last_refresh"] = _iso_now()
        _save_registry(registry_path, reg)
        return reg

    cache = {m["name"]: m for m in reg["models"]}

    for name, info in runtime.items():
        entry = cache.get(name) or {"name": name, "first_seen": now}
        if entry.get("digest") != info.digest:
            log.info("Indexed model %s (%s, %s)", name, info.parameter_size, info.quantization_level)
        entry.update(asdict(info))
        entry["available"] = True
        entry["last_seen"] = now
        cache[name] = entry

    # models removed from runtime -> mark unavailable
    for name, entry in cache.items():
        if name not in runtime:
            entry["available"] = False

    reg["source"] = f"ollama@{base_url}"
    reg["last_refresh"] = _iso_now()
    reg["models"] = sorted(cache.values(), key=lambda m: (not m["available"], m["name"].lower()))
    _save_registry(registry_path, reg)
    return reg


def _load_registry(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {"schema": 1, "source": "", "last_refresh": None, "models": []}
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _save_registry(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=False)
    tmp.replace(path)


def _iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
