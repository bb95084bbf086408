# llamachat/core/chat_store.py
from __future__ import annotations
import json, logging, random, threading, time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from llamachat.infra.llm.base import ChatMessage, parse_timestamp

log = logging.getLogger("chats")

TITLE_MAX = 30


def _now() -> datetime:
    return datetime.now(timezone.utc)


def assemble_reply(full_text: str, now: Optional[datetime] = None) -> ChatMessage:
    """The finished assistant turn for a completed stream."""
    return ChatMessage(role="assistant", content=full_text, timestamp=now or _now())


@dataclass
class ChatRecord:
    id: str
    title: str
    model: str
    messages: List[ChatMessage] = field(default_factory=list)
    system_prompt: str = ""
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "model": self.model,
            "systemPrompt": self.system_prompt,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ChatRecord":
        return cls(
            id=d["id"],
            title=d.get("title") or "",
            model=d.get("model") or "",
            messages=[ChatMessage.from_dict(m) for m in d.get("messages") or []],
            system_prompt=d.get("systemPrompt") or "",
            created_at=parse_timestamp(d["createdAt"]),
            updated_at=parse_timestamp(d["updatedAt"]),
        )


class ChatStore:
    """
    Flat keyed collection of chat records in one JSON file.

    Every mutation is a locked read-modify-write followed by an atomic
    tmp+replace, so updates to the same file never interleave. Writes work on
    the stored records as-is: a record this version cannot read is skipped by
    load_chats but kept on disk, and a file that cannot be read at all is
    never overwritten.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.RLock()

    # -------- reads --------
    def _read_raw(self) -> List[Any]:
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, list):
            raise ValueError(f"{self.path} does not hold a list of chats")
        return raw

    def load_chats(self) -> List[ChatRecord]:
        try:
            raw = self._read_raw()
        except (OSError, ValueError) as e:
            log.error("Error loading chats from %s: %s", self.path, e)
            return []
        chats = []
        for i, d in enumerate(raw):
            try:
                chats.append(ChatRecord.from_dict(d))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                log.warning("Skipping unreadable chat #%d in %s: %r", i, self.path, e)
        return chats

    def get_chat(self, chat_id: str) -> ChatRecord:
        for chat in self.load_chats():
            if chat.id == chat_id:
                return chat
        raise KeyError(f"Chat with ID {chat_id} not found")

    # -------- writes --------
    def save_chat(self, chat: ChatRecord) -> None:
        with self._lock:
            raw = self._read_raw()
            for i, d in enumerate(raw):
                if isinstance(d, dict) and d.get("id") == chat.id:
                    raw[i] = chat.to_dict()
                    break
            else:
                raw.append(chat.to_dict())
            self._write(raw)

    def delete_chat(self, chat_id: str) -> None:
        with self._lock:
            raw = [d for d in self._read_raw() if not (isinstance(d, dict) and d.get("id") == chat_id)]
            self._write(raw)

    def create_new_chat(self, model: str, title: Optional[str] = None, system_prompt: str = "") -> ChatRecord:
        now = _now()
        chat = ChatRecord(
            id=f"chat-{int(time.time() * 1000)}-{random.randint(0, 999)}",
            title=title or f"New Chat {now.astimezone().strftime('%H:%M:%S')}",
            model=model,
            system_prompt=system_prompt,
            created_at=now,
            updated_at=now,
        )
        self.save_chat(chat)
        log.info("Created chat %s (%s)", chat.id, model)
        return chat

    def update_chat(self, chat_id: str, message: ChatMessage) -> ChatRecord:
        """Append ``message`` to the chat and bump its updated time."""
        with self._lock:
            chat = self.get_chat(chat_id)
            now = _now()
            chat.messages.append(replace(message, timestamp=message.timestamp or now))
            chat.updated_at = now

            # First user message names the chat
            if len(chat.messages) == 1 and message.role == "user":
                text = message.content
                chat.title = text[:TITLE_MAX] + ("..." if len(text) > TITLE_MAX else "")

            self.save_chat(chat)
            return chat

    def append_reply(self, chat_id: str, full_text: str) -> ChatRecord:
        return self.update_chat(chat_id, assemble_reply(full_text))

    def _write(self, raw: List[Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(raw, f, indent=2)
        tmp.replace(self.path)
