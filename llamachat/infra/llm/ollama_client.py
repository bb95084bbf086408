# llamachat/infra/llm/ollama_client.py
from __future__ import annotations
import json, logging, time
from datetime import datetime, timezone
from typing import Callable, Iterator, List, Optional, Dict, Any
import requests
from urllib3.exceptions import ReadTimeoutError

from llamachat.constants import DEFAULT_OLLAMA, DEFAULT_CONNECT_TIMEOUT, DEFAULT_IDLE_TIMEOUT
from .base import ModelClient, ChatMessage, ChatRequest, GenerateRequest, StreamEvent
from .errors import (
    EndpointError, IncompleteStreamError, StreamTimeoutError,
    StreamUnavailableError, TransportError,
)
from .ndjson import LineBuffer

log = logging.getLogger("llm.stream")

StopFn = Callable[[], bool]
INCOMPLETE_POLICIES = ("error", "complete")
USAGE_KEYS = ("prompt_eval_count", "eval_count", "total_duration")


class _MalformedRecord(ValueError):
    pass


def _never() -> bool:
    return False


def _readable(r: requests.Response) -> bool:
    raw = r.raw
    return raw is not None and (hasattr(raw, "stream") or hasattr(raw, "read"))


def _chat_fragment(obj: Dict[str, Any]) -> str:
    msg = obj.get("message")
    if isinstance(msg, dict) and isinstance(msg.get("content"), str):
        return msg["content"]
    if msg is None and obj.get("done"):
        return ""
    raise _MalformedRecord("record has no message.content")


def _generate_fragment(obj: Dict[str, Any]) -> str:
    resp = obj.get("response")
    if isinstance(resp, str):
        return resp
    if resp is None and obj.get("done"):
        return ""
    raise _MalformedRecord("record has no response text")


def transport_error(exc: requests.RequestException, url: str):
    """Map a requests failure onto the stream error taxonomy."""
    if isinstance(exc, requests.ConnectTimeout):
        return TransportError(f"Timed out connecting to {url}")
    cause = exc.args[0] if exc.args else None
    if isinstance(exc, requests.ReadTimeout) or isinstance(cause, ReadTimeoutError):
        return StreamTimeoutError(f"No data from {url} within the idle timeout")
    return TransportError(f"Connection to {url} failed: {exc}")


def error_detail(r: requests.Response) -> str:
    try:
        body = r.json()
    except ValueError:
        return (r.text or "").strip()[:200]
    except requests.RequestException:
        return ""
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return ""


def check_status(r: requests.Response) -> None:
    try:
        r.raise_for_status()
    except requests.HTTPError as e:
        detail = error_detail(r)
        msg = f"{r.status_code} {r.reason or ''}".strip()
        if detail:
            msg = f"{msg}: {detail}"
        raise EndpointError(msg, status=r.status_code) from e


class OllamaClient(ModelClient):
    """
    Client for an Ollama-compatible server.

    Streaming calls return a lazy iterator of StreamEvents: "start", one
    "delta" per parsed record, then exactly one terminal "end" (full text in
    ``text``) or "cancelled". Fatal conditions are raised as StreamError
    subclasses; malformed lines are logged and skipped.
    """

    def __init__(self, base_url: str = DEFAULT_OLLAMA, *,
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
                 idle_timeout: Optional[float] = DEFAULT_IDLE_TIMEOUT,
                 incomplete_policy: str = "error",
                 session=None,
                 clock: Callable[[], float] = time.monotonic,
                 chunk_size: Optional[int] = None):
        if incomplete_policy not in INCOMPLETE_POLICIES:
            raise ValueError(f"incomplete_policy must be one of {INCOMPLETE_POLICIES}")
        self.base_url = base_url.rstrip("/")
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout
        self.incomplete_policy = incomplete_policy
        self.chunk_size = chunk_size
        self._http = session if session is not None else requests
        self._clock = clock

    @classmethod
    def from_settings(cls, cfg: dict, session=None) -> "OllamaClient":
        o = cfg.get("ollama", {})
        return cls(
            o.get("base_url", DEFAULT_OLLAMA),
            connect_timeout=float(o.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT)),
            idle_timeout=o.get("idle_timeout", DEFAULT_IDLE_TIMEOUT),
            incomplete_policy=o.get("incomplete_policy", "error"),
            session=session,
        )

    @property
    def timeout(self):
        # requests applies the read timeout to every socket read, i.e. an idle bound
        return (self.connect_timeout, self.idle_timeout)

    # -------- chat --------
    def stream_chat(self, request: ChatRequest, *, stop_fn: Optional[StopFn] = None) -> Iterator[StreamEvent]:
        request.validate()
        return self._stream("/api/chat", request.to_payload(stream=True), _chat_fragment, stop_fn or _never)

    def chat(self, request: ChatRequest) -> ChatMessage:
        request.validate()
        obj = self._post_json("/api/chat", request.to_payload(stream=False))
        msg = obj.get("message") or {}
        return ChatMessage(
            role=msg.get("role") or "assistant",
            content=msg.get("content") or "",
            timestamp=datetime.now(timezone.utc),
        )

    # -------- generate --------
    def stream_generate(self, request: GenerateRequest, *, stop_fn: Optional[StopFn] = None) -> Iterator[StreamEvent]:
        request.validate()
        return self._stream("/api/generate", request.to_payload(stream=True), _generate_fragment, stop_fn or _never)

    def generate(self, request: GenerateRequest) -> str:
        request.validate()
        obj = self._post_json("/api/generate", request.to_payload(stream=False))
        return obj.get("response") or ""

    # -------- internals --------
    def _post_json(self, path: str, payload: dict) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            r = self._http.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise transport_error(e, url) from e
        with r:
            check_status(r)
            try:
                obj = r.json()
            except ValueError as e:
                raise EndpointError(f"Invalid JSON from {url}", status=r.status_code) from e
        if not isinstance(obj, dict):
            raise EndpointError(f"Unexpected response shape from {url}", status=r.status_code)
        if obj.get("error"):
            raise EndpointError(str(obj["error"]), status=r.status_code)
        return obj

    def _stream(self, path: str, payload: dict, fragment_of: Callable[[dict], str],
                stop: StopFn) -> Iterator[StreamEvent]:
        url = f"{self.base_url}{path}"
        try:
            r = self._http.post(url, json=payload, stream=True, timeout=self.timeout)
        except requests.RequestException as e:
            raise transport_error(e, url) from e

        with r:
            check_status(r)
            if not _readable(r):
                raise StreamUnavailableError(f"Response from {url} has no readable body")
            if stop():
                yield StreamEvent(type="cancelled")
                return

            parts: List[str] = []
            skipped = 0
            yield StreamEvent(type="start")
            for line in self._iter_lines(r, url, stop):
                try:
                    obj = json.loads(line)
                    if not isinstance(obj, dict):
                        raise _MalformedRecord("record is not a JSON object")
                    if obj.get("error"):
                        raise EndpointError(str(obj["error"]), status=r.status_code)
                    delta = fragment_of(obj)
                except ValueError as e:
                    skipped += 1
                    log.warning("Skipping malformed stream record (%s): %.120s", e, line)
                    continue

                if stop():
                    break
                parts.append(delta)
                yield StreamEvent(type="delta", text=delta, skipped=skipped)

                if obj.get("done"):
                    if stop():
                        break
                    usage = {k: obj[k] for k in USAGE_KEYS if k in obj}
                    yield StreamEvent(
                        type="end",
                        text="".join(parts),
                        finish_reason=obj.get("done_reason") or None,
                        usage=usage or None,
                        skipped=skipped,
                    )
                    return

            if stop():
                log.info("Stream from %s cancelled after %d records", url, len(parts))
                yield StreamEvent(type="cancelled", text="".join(parts), skipped=skipped)
                return

            partial = "".join(parts)
            if self.incomplete_policy == "complete":
                log.warning("Stream from %s closed without a final record; keeping partial reply", url)
                yield StreamEvent(type="end", text=partial, finish_reason="incomplete", skipped=skipped)
                return
            raise IncompleteStreamError(
                f"Stream from {url} closed after {len(parts)} records without done=true",
                partial=partial,
            )

    def _iter_lines(self, r: requests.Response, url: str, stop: StopFn) -> Iterator[str]:
        buf = LineBuffer()
        chunks = r.iter_content(chunk_size=self.chunk_size)
        while True:
            # Only the blocking read counts as idle; time spent by the consumer does not
            started = self._clock()
            try:
                chunk = next(chunks)
            except StopIteration:
                break
            except requests.RequestException as e:
                raise transport_error(e, url) from e
            waited = self._clock() - started
            if self.idle_timeout is not None and waited > self.idle_timeout:
                raise StreamTimeoutError(
                    f"No data from {url} for {waited:.1f}s (idle timeout {self.idle_timeout}s)")
            if stop():
                return
            yield from buf.feed(chunk)
        yield from buf.flush()
