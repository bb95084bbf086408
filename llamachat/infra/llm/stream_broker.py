# llamachat/infra/llm/stream_broker.py
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, field
from itertools import count
from typing import Callable, Dict, Optional

log = logging.getLogger("llm.broker")


# ---------- Public types ----------
@dataclass(slots=True)
class Job:
    ticket:  int
    chat_id: str
    status:  str = "pending"     # "pending"|"running"|"ok"|"cancelled"|"error"
    _cancel: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def stop_fn(self) -> bool:
        return self._cancel.is_set()


# ---------- Broker ----------
class StreamBroker:
    """
    Ticket registry for streaming LLM work: at most one in-flight stream per
    chat id. Starting a stream for a chat cancels the one it supersedes;
    streams for different chats never touch each other.
    Cancellation is cooperative: the running job sees it through ``stop_fn``
    at its next read.
    """

    def __init__(self):
        self._tickets = count(1)
        self._lock = threading.Lock()
        self._active: Dict[str, Job] = {}

    # -------- API --------
    def begin(self, chat_id: str) -> Job:
        with self._lock:
            job = Job(next(self._tickets), chat_id, status="running")
            prev = self._active.get(chat_id)
            self._active[chat_id] = job
        if prev is not None:
            log.info("Chat %s: ticket %d supersedes %d", chat_id, job.ticket, prev.ticket)
            prev.cancel()
        return job

    def finish(self, job: Job, status: str) -> None:
        job.status = status
        with self._lock:
            if self._active.get(job.chat_id) is job:
                del self._active[job.chat_id]

    def run(self, chat_id: str, func: Callable[..., str], *args, **kwargs) -> Job:
        """
        Run ``func`` under a fresh ticket for ``chat_id``. A ``stop_fn`` kwarg
        is injected so the function can observe cancellation. ``func`` may
        return "ok"/"cancelled"; any exception marks the job "error" and propagates.
        """
        job = self.begin(chat_id)
        kw = dict(kwargs)
        kw.setdefault("stop_fn", job.stop_fn)
        status = "error"
        try:
            result = func(*args, **kw)
            status = "cancelled" if job.cancelled or result == "cancelled" else "ok"
        finally:
            self.finish(job, status)
            log.debug("Chat %s ticket %d finished: %s", chat_id, job.ticket, status)
        return job

    def cancel_chat(self, chat_id: str) -> bool:
        with self._lock:
            job = self._active.get(chat_id)
        if job is None:
            return False
        job.cancel()
        return True

    def cancel_ticket(self, ticket: int) -> bool:
        with self._lock:
            job = next((j for j in self._active.values() if j.ticket == ticket), None)
        if job is None:
            return False
        job.cancel()
        return True

    def cancel_all(self) -> None:
        with self._lock:
            jobs = list(self._active.values())
        for job in jobs:
            job.cancel()

    def active_ticket(self, chat_id: str) -> int:
        with self._lock:
            job = self._active.get(chat_id)
        return job.ticket if job else -1

    def active(self, chat_id: str) -> Optional[Job]:
        with self._lock:
            return self._active.get(chat_id)
