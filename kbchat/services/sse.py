"""Server-Sent Events framing for the answer stream.

Wire format, in order:

    event: citations
    data: [{...citation...}, ...]

    data: {"choices": [{"delta": {"content": "<fragment>"}}]}

    ...

    data: [DONE]

Lines starting with ``:`` are comments/heartbeats. A failure after the
preamble is sent as ``event: error`` and the stream closes without ``[DONE]``.

``SSEDecoder`` is the matching client-side decoder (used by ``scripts/ask.py``
and the tests).
"""

from __future__ import annotations

import codecs
import json
from typing import Any, Dict, List, Optional, Sequence

from kbchat.api.chat.schemas import Citation
from kbchat.services.errors import IncompleteStreamError

DONE_PAYLOAD = "[DONE]"
DONE_EVENT = f"data: {DONE_PAYLOAD}\n\n"


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def citations_event(citations: Sequence[Citation]) -> str:
    payload = [citation.model_dump(exclude_none=True) for citation in citations]
    return f"event: citations\ndata: {_dumps(payload)}\n\n"


def delta_event(content: str) -> str:
    return f"data: {_dumps({'choices': [{'delta': {'content': content}}]})}\n\n"


def error_event(message: str) -> str:
    return f"event: error\ndata: {_dumps({'error': message})}\n\n"


def comment(text: str = "keep-alive") -> str:
    return f": {text}\n\n"


class SSEDecoder:
    """Incremental decoder for the answer stream.

    Feed it raw byte chunks in arrival order. Chunks may split UTF-8 sequences,
    lines and JSON payloads anywhere; only complete ``\\n``-terminated lines
    are processed, and a data line whose JSON does not parse yet is kept in the
    buffer until more bytes arrive.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._event: Optional[str] = None
        self.parts: List[str] = []
        self.citations: List[Dict[str, Any]] = []
        self.error: Optional[str] = None
        self.done = False

    @property
    def answer(self) -> str:
        return "".join(self.parts)

    def feed(self, data: bytes) -> List[str]:
        """Consume a byte chunk and return the content fragments it completed."""
        self._buffer += self._utf8.decode(data)
        fragments: List[str] = []

        while "\n" in self._buffer:
            line, rest = self._buffer.split("\n", 1)
            line = line.rstrip("\r")

            if not line:
                self._buffer = rest
                self._event = None
                continue
            if line.startswith(":"):
                self._buffer = rest
                continue
            if line.startswith("event:"):
                self._buffer = rest
                self._event = line[len("event:"):].strip()
                continue
            if not line.startswith("data:"):
                self._buffer = rest
                continue

            payload = line[len("data:"):].strip()
            if payload == DONE_PAYLOAD:
                self._buffer = rest
                self.done = True
                continue

            try:
                parsed = json.loads(payload)
            except json.JSONDecodeError:
                # Incomplete payload: wait for more bytes
                break

            self._buffer = rest
            fragment = self._dispatch(parsed)
            if fragment:
                self.parts.append(fragment)
                fragments.append(fragment)

        return fragments

    def _dispatch(self, parsed: Any) -> Optional[str]:
        if self._event == "citations":
            self.citations = list(parsed or [])
            return None
        if self._event == "error":
            self.error = parsed.get("error") if isinstance(parsed, dict) else str(parsed)
            return None
        try:
            return parsed["choices"][0]["delta"].get("content")
        except (KeyError, IndexError, TypeError, AttributeError):
            return None

    def finish(self) -> str:
        """Flush the decoder and return the answer.

        Raises:
            IncompleteStreamError: the server reported an error, or the stream
                ended without ``[DONE]``
        """
        self.feed(b"")
        self._buffer += self._utf8.decode(b"", final=True)
        if self.error is not None:
            raise IncompleteStreamError(self.error)
        if not self.done:
            raise IncompleteStreamError()
        return self.answer
