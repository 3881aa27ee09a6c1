from __future__ import annotations

import codecs
import json
from typing import Any, Optional

from ..common.errors import ChunkParseError

DATA_PREFIX = "data: "


class LineBuffer:
    """Turns arbitrarily split byte chunks into complete text lines.

    The trailing fragment after the last newline is held back until more data
    (or `flush`) arrives, so a line split across two reads comes out exactly
    once. UTF-8 sequences split across reads are handled by an incremental
    decoder.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if not text:
            return []
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        return lines

    def flush(self) -> list[str]:
        """Return whatever is left once the body has ended."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return [tail] if tail else []

    @property
    def pending(self) -> str:
        return self._pending


def extract_payload(line: str) -> Optional[str]:
    """Payload of an SSE `data: ` line, or None for anything else.

    Blank keep-alives, `event:` lines and comments yield None.
    """
    stripped = line.strip()
    if not stripped.startswith(DATA_PREFIX):
        return None
    return stripped[len(DATA_PREFIX):].strip()


def decode_payload(payload: str) -> Any:
    try:
        return json.loads(payload)
    except ValueError as e:
        raise ChunkParseError(payload, str(e)) from e
