"""Shared fakes for the HTTP layer.

Responses are real ``requests.Response`` objects whose ``raw`` replays a
scripted list of byte chunks, so requests' own exception wrapping runs
exactly as it does against a live socket.
"""

from __future__ import annotations

import json
from itertools import chain, repeat
from unittest.mock import MagicMock

import pytest
import requests


class FakeRaw:
    """Stand-in for a urllib3 response body."""

    def __init__(self, chunks, error: Exception | None = None):
        self._chunks = list(chunks)
        self.error = error
        self.reads = 0
        self.closed = False

    def stream(self, amt=None, decode_content=None):
        for chunk in self._chunks:
            self.reads += 1
            yield chunk
        if self.error is not None:
            raise self.error

    def close(self):
        self.closed = True


def ndjson(*records) -> bytes:
    return b"".join(json.dumps(r).encode("utf-8") + b"\n" for r in records)


def build_response(chunks=(), *, status: int = 200, reason: str = "OK",
                   error: Exception | None = None, url: str = "http://ollama.test/api/chat"):
    r = requests.Response()
    r.status_code = status
    r.reason = reason
    r.url = url
    r.encoding = "utf-8"
    r.raw = FakeRaw(chunks, error=error)
    return r


class FakeClock:
    """Monotonic clock that returns scripted times, then holds the last one."""

    def __init__(self, *times: float):
        self._times = chain(times, repeat(times[-1] if times else 0.0))
        self.calls = 0

    def __call__(self) -> float:
        self.calls += 1
        return next(self._times)


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def make_response():
    return build_response


@pytest.fixture
def session():
    """A session whose get/post/delete return whatever the test assigns."""
    return MagicMock(spec=["get", "post", "delete"])
