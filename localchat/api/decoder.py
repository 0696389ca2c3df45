"""Newline-delimited JSON decoding for chunked backend streams.

Fragments arrive at arbitrary byte boundaries.  The decoder keeps one text
buffer, emits a record per complete line and carries the trailing partial
line into the next fragment.  Malformed lines are logged and skipped; they
never abort the stream.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterable
from typing import Any

from localchat.api.errors import MalformedStreamLine

logger = logging.getLogger(__name__)


def parse_line(line: str) -> dict[str, Any]:
    """Parse one line into a record.  Raises MalformedStreamLine."""
    try:
        record = json.loads(line)
    except json.JSONDecodeError as e:
        raise MalformedStreamLine(line, f"invalid JSON ({e.msg})") from e
    if not isinstance(record, dict):
        raise MalformedStreamLine(line, "not a JSON object")
    return record


class NDJSONDecoder:
    """Incremental decoder: bytes in, JSON object records out."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._text = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self.dropped = 0

    def feed(self, fragment: bytes) -> list[dict[str, Any]]:
        """Consume a fragment, return records for every completed line."""
        self._buffer += self._text.decode(fragment)
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse(lines)

    def flush(self) -> list[dict[str, Any]]:
        """End of stream: parse whatever trailing line is left, once."""
        self._buffer += self._text.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        return self._parse([tail])

    def _parse(self, lines: list[str]) -> list[dict[str, Any]]:
        records = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                records.append(parse_line(line))
            except MalformedStreamLine as e:
                self.dropped += 1
                logger.warning("Skipping malformed stream line: %s", e)
        return records


async def decode_stream(
    chunks: AsyncIterable[bytes],
) -> AsyncGenerator[dict[str, Any], None]:
    """Yield one record per line of a chunked byte stream.

    The underlying iterator is closed on completion and when the caller
    stops iterating early.
    """
    decoder = NDJSONDecoder()
    try:
        async for fragment in chunks:
            for record in decoder.feed(fragment):
                yield record
        for record in decoder.flush():
            yield record
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()
        if decoder.dropped:
            logger.debug("Stream finished with %d malformed line(s) dropped", decoder.dropped)
