# llamachat/infra/llm/base.py
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Iterator, Mapping, Optional, Sequence, Dict, Any

ROLES = ("system", "user", "assistant")
# Runner switches the server accepts as true/false
BOOL_OPTIONS = frozenset({"penalize_newline", "numa", "low_vram", "use_mmap", "use_mlock", "vocab_only", "f16_kv"})


def parse_timestamp(s: str) -> datetime:
    """ISO-8601 to datetime; a trailing "Z" is read as UTC."""
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return datetime.fromisoformat(s)


@dataclass
class ChatMessage:
    role: str   # "user" | "assistant" | "system"
    content: str
    timestamp: Optional[datetime] = None

    def to_wire(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.timestamp is not None:
            d["timestamp"] = self.timestamp.isoformat()
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ChatMessage":
        ts = d.get("timestamp")
        return cls(
            role=d["role"],
            content=d.get("content") or "",
            timestamp=parse_timestamp(ts) if ts else None,
        )


def _check_option(key: str, value: Any) -> None:
    if key == "stop":
        if not (isinstance(value, (list, tuple)) and all(isinstance(s, str) for s in value)):
            raise ValueError("option 'stop' must be a list of strings")
        return
    if key in BOOL_OPTIONS:
        if not isinstance(value, bool):
            raise ValueError(f"option {key!r} must be true or false, got {value!r}")
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"option {key!r} must be numeric, got {value!r}")


@dataclass(frozen=True)
class ChatRequest:
    """One chat completion request; built fresh per call."""
    model: str
    messages: Sequence[ChatMessage]
    stream: bool = True
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "messages", tuple(self.messages))
        object.__setattr__(self, "options", MappingProxyType(dict(self.options or {})))

    def validate(self) -> None:
        if not (self.model or "").strip():
            raise ValueError("model must be a non-empty string")
        if not self.messages:
            raise ValueError("messages must not be empty")
        for i, m in enumerate(self.messages):
            if m.role not in ROLES:
                raise ValueError(f"unknown role {m.role!r} at index {i}")
            if m.role == "system" and i != 0:
                raise ValueError("a system message may only be the first message")
        for k, v in self.options.items():
            _check_option(k, v)

    def to_payload(self, *, stream: Optional[bool] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_wire() for m in self.messages],
            "stream": self.stream if stream is None else stream,
        }
        if self.options:
            payload["options"] = dict(self.options)
        return payload


@dataclass(frozen=True)
class GenerateRequest:
    """Single-prompt completion for /api/generate."""
    model: str
    prompt: str
    system: Optional[str] = None
    stream: bool = True
    options: Mapping[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        if not (self.model or "").strip():
            raise ValueError("model must be a non-empty string")
        for k, v in (self.options or {}).items():
            _check_option(k, v)

    def to_payload(self, *, stream: Optional[bool] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": self.prompt,
            "stream": self.stream if stream is None else stream,
        }
        if self.system:
            payload["system"] = self.system
        if self.options:
            payload["options"] = dict(self.options)
        return payload


@dataclass
class StreamEvent:
    type: str               # "start" | "delta" | "end" | "cancelled"
    text: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[Dict] = None
    skipped: int = 0        # malformed lines dropped so far


class ModelClient:
    """Abstract client."""
    def stream_chat(self, request: ChatRequest, *, stop_fn=None) -> Iterator[StreamEvent]:
        raise NotImplementedError
