# llamachat/infra/llm/errors.py
"""Failure kinds of a chat request.

Every fatal outcome of a streamed completion is a ``StreamError``; none of
them is retried here, retry policy belongs to the caller.
"""
from __future__ import annotations
from typing import Optional


class StreamError(Exception):
    """Base for all fatal request/stream failures."""


class EndpointError(StreamError):
    """The server answered with a non-success status or reported an error."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class StreamUnavailableError(StreamError):
    """The response body could not be read as a stream."""


class IncompleteStreamError(StreamError):
    """The stream closed before a record with ``done: true`` arrived.

    ``partial`` holds the text delivered so far so callers can show it as
    interrupted rather than discard it.
    """

    def __init__(self, message: str, partial: str = ""):
        super().__init__(message)
        self.partial = partial


class TransportError(StreamError):
    """Connection-level fault (refused, reset, broken chunked encoding)."""


class StreamTimeoutError(StreamError, TimeoutError):
    """No bytes arrived within the configured idle bound."""
