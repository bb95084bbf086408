# llamachat/core/chat_controller.py
from __future__ import annotations
import logging
from typing import Callable, Dict, List, Optional

from llamachat.infra.llm.base import ChatMessage, ChatRequest, ModelClient
from llamachat.infra.llm.backend_adapter import stream_chat
from llamachat.infra.llm.stream_broker import StreamBroker
from .chat_store import ChatRecord, ChatStore

log = logging.getLogger("chats")


class ChatController:
    """
    Glue between a chat store and the LLM backend.

    Responsibilities:
    - Persist the user turn, then stream the reply through the broker.
    - Forward tokens to the caller as they arrive.
    - Append the assistant message only once the stream really completed;
      failed, cancelled or superseded streams leave the history untouched.
    """

    def __init__(self, client: ModelClient, store: ChatStore, *,
                 broker: Optional[StreamBroker] = None,
                 options: Optional[Dict] = None,
                 max_turns: int = 512):
        self.client = client
        self.store = store
        self.broker = broker or StreamBroker()
        self.options = dict(options or {})
        self._max_turns = max_turns

    def build_request(self, chat: ChatRecord) -> ChatRequest:
        msgs: List[ChatMessage] = []
        if chat.system_prompt.strip():
            msgs.append(ChatMessage(role="system", content=chat.system_prompt))
        for m in chat.messages[-self._max_turns * 2:]:
            if m.role != "system":
                msgs.append(ChatMessage(role=m.role, content=m.content))
        return ChatRequest(model=chat.model, messages=msgs, options=self.options)

    def send(self, chat_id: str, text: str, *,
             on_chunk: Optional[Callable[[str], None]] = None) -> Optional[ChatRecord]:
        """
        Run one user turn. Returns the updated chat, or None if the stream was
        cancelled or superseded. StreamErrors propagate after logging.
        """
        chat = self.store.update_chat(chat_id, ChatMessage(role="user", content=text))
        request = self.build_request(chat)
        reply: Dict[str, str] = {}

        def _on_complete(full: str) -> None:
            reply["text"] = full

        job = self.broker.run(chat_id, stream_chat, self.client, request,
                              on_chunk or (lambda _t: None), _on_complete)
        if job.status != "ok" or "text" not in reply:
            log.info("Chat %s: ticket %d ended %s; no reply stored", chat_id, job.ticket, job.status)
            return None
        return self.store.append_reply(chat_id, reply["text"])

    def stop(self, chat_id: str) -> bool:
        return self.broker.cancel_chat(chat_id)
