"""Incremental decoder for OpenAI-style server-sent event streams.

The upstream body is a sequence of newline-delimited records of the form
``data: <payload>``. Reads can split a record anywhere (even inside a
multi-byte character), so the decoder keeps the trailing partial line
between feeds and only parses complete lines.
"""

import codecs
import json
import logging

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def extract_token(chunk_data: dict) -> str:
    """Pull the text increment out of one parsed completion chunk."""
    choices = chunk_data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    choice = choices[0]
    delta = choice.get("delta") or {}
    token = delta.get("content") if isinstance(delta, dict) else None
    if not token:
        # Legacy completions stream text instead of a delta
        token = choice.get("text")
    return token if isinstance(token, str) else ""


class SSEDecoder:
    """Turns raw upstream bytes into text tokens.

    Usage:
        decoder = SSEDecoder()
        for raw in chunks:
            for token in decoder.feed(raw):
                ...
            if decoder.done:
                break
        tokens = decoder.flush()
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.lines_read = 0

    def feed(self, data: bytes | str) -> list[str]:
        """Consume one read and return the tokens of every complete line.

        Once the sentinel is seen, the rest of the input (including the
        remainder of this read) is ignored.
        """
        if self.done:
            return []
        if isinstance(data, bytes):
            data = self._decoder.decode(data)
        self._buffer += data

        lines = self._buffer.split("\n")
        # Keep the last (possibly incomplete) line for the next read
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def flush(self) -> list[str]:
        """Parse whatever is left once the transport has closed."""
        if self.done:
            return []
        remainder = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if not remainder.strip():
            return []
        return self._parse_lines(remainder.split("\n"))

    def _parse_lines(self, lines: list[str]) -> list[str]:
        tokens = []
        for line in lines:
            self.lines_read += 1
            trimmed = line.strip()
            # Blank separators, comments and keep-alive pings
            if not trimmed.startswith(DATA_PREFIX):
                continue

            payload = trimmed[len(DATA_PREFIX):]
            if payload == DONE_SENTINEL:
                self.done = True
                self._buffer = ""
                break

            try:
                chunk_data = json.loads(payload)
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed SSE payload: {payload[:100]}")
                continue
            if not isinstance(chunk_data, dict):
                continue

            token = extract_token(chunk_data)
            if token:
                tokens.append(token)
        return tokens
