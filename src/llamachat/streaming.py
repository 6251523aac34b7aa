"""Server-sent event framing for streamed chat completions.

The relay streams newline-delimited ``data: <json>`` frames whose
``choices[0].delta.content`` is the next text fragment, ending with the
``data: [DONE]`` sentinel. Network reads do not respect frame boundaries, so
the decoder buffers partial lines (and partial UTF-8 sequences) until they are
complete.
"""

import codecs
import json
import logging
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE = "[DONE]"
DONE_FRAME = f"{DATA_PREFIX}{DONE}\n\n"


def encode_frame(fragment: str) -> str:
    """Builds the frame carrying one text fragment."""
    payload = {"choices": [{"delta": {"content": fragment}}]}
    return f"{DATA_PREFIX}{json.dumps(payload, ensure_ascii=False)}\n\n"


def extract_delta(payload: Any) -> str:
    """Returns ``choices[0].delta.content`` from a decoded frame, or ``""``."""
    try:
        content = payload["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return ""
    return content if isinstance(content, str) else ""


class SSEDecoder:
    """Incrementally turns raw response bytes into text fragments."""

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False

    def feed(self, chunk: bytes) -> List[str]:
        """Consumes one network read and returns the fragments it completed."""
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse(lines)

    def flush(self) -> List[str]:
        """Decodes whatever is left once the transport has closed."""
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer, ""
        return self._parse([rest])

    def _parse(self, lines: List[str]) -> List[str]:
        fragments = []
        for line in lines:
            fragment = self._parse_line(line.strip())
            if fragment:
                fragments.append(fragment)
        return fragments

    def _parse_line(self, line: str) -> Optional[str]:
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX) :].strip()
        if data == DONE:
            self.done = True
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning("Skipping malformed stream frame %r: %s", data[:80], e)
            return None
        return extract_delta(payload)
