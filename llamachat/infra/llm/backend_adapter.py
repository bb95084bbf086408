# llamachat/infra/llm/backend_adapter.py
from __future__ import annotations
import logging
from typing import Callable, Iterator, List, Optional
from .base import ModelClient, ChatMessage, ChatRequest
from .errors import StreamError

log = logging.getLogger("llm.stream")

ChunkFn    = Callable[[str], None]
CompleteFn = Callable[[str], None]
StopFn     = Callable[[], bool]
MessagesBuilder = Callable[[str], List[ChatMessage]]
OptionsBuilder  = Callable[[], dict]


def stream_chat(
    client: ModelClient,
    request: ChatRequest,
    on_chunk: ChunkFn,
    on_complete: CompleteFn,
    *,
    stop_fn: Optional[StopFn] = None,
) -> str:
    """
    Callback form of ``client.stream_chat``.

    ``on_chunk`` gets every fragment in wire order; ``on_complete`` gets the
    full reply exactly once, after the last ``on_chunk``. Returns "ok" or
    "cancelled". Any StreamError propagates; ``on_complete`` is never called
    in that case and fragments already delivered stay delivered.
    """
    stop = stop_fn or (lambda: False)
    events = client.stream_chat(request, stop_fn=stop)
    try:
        for ev in events:
            if stop():
                return "cancelled"
            if ev.type == "delta":
                on_chunk(ev.text)
            elif ev.type == "end":
                on_complete(ev.text)
                return "ok"
            elif ev.type == "cancelled":
                return "cancelled"
    except StreamError as e:
        log.error("Chat stream for model %s failed: %s", request.model, e)
        raise
    finally:
        close = getattr(events, "close", None)
        if close:
            close()
    return "cancelled" if stop() else "ok"


def make_stream_func_from_client(
    client: ModelClient,
    *,
    model: str,
    build_messages: MessagesBuilder,
    build_options: Optional[OptionsBuilder] = None,
) -> Callable[..., Iterator[str]]:
    """
    Returns a StreamFunc(prompt, *, stop_fn) -> Iterator[str] of text
    fragments, for callers that only want the tokens.
    """
    def stream(prompt: str, *, stop_fn: Optional[StopFn] = None) -> Iterator[str]:
        stop = stop_fn or (lambda: False)
        req = ChatRequest(
            model=model,
            messages=build_messages(prompt),
            options=(build_options() if build_options else {}) or {},
        )
        for ev in client.stream_chat(req, stop_fn=stop):
            if stop():
                break
            if ev.type == "delta" and ev.text:
                yield ev.text
            elif ev.type in ("end", "cancelled"):
                break
    return stream
