# llamachat/infra/llm/ndjson.py
from __future__ import annotations
import codecs
from typing import List


class LineBuffer:
    """
    Reassemble newline-delimited records from arbitrary byte chunks.

    Chunk boundaries carry no meaning: a record (or a multibyte UTF-8
    character) may be split over any number of reads. Only complete,
    non-blank lines are returned, stripped of surrounding whitespace.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> List[str]:
        if not chunk:
            return []
        self._pending += self._decoder.decode(chunk)
        if "\n" not in self._pending:
            return []
        *complete, self._pending = self._pending.split("\n")
        return [ln.strip() for ln in complete if ln.strip()]

    def flush(self) -> List[str]:
        """Return whatever is left once the stream has ended."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        tail = tail.strip()
        return [tail] if tail else []

    @property
    def pending(self) -> str:
        return self._pending
