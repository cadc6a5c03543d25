from __future__ import annotations
"""
Concierge — SSE Frame Parser
============================
Incremental parser for the chat event stream. Bytes may arrive split at
any offset, including inside a UTF-8 sequence or between the two newlines
of a frame delimiter; the unfinished tail is kept until the next feed.
"""

import codecs
import json
import logging
from dataclasses import dataclass

from concierge.client.types import ErrorEvent, PhaseEvent, ResultEvent

logger = logging.getLogger(__name__)

FRAME_DELIMITER = "\n\n"


@dataclass(frozen=True)
class SSEFrame:
    event: str
    data: str


class SSEFrameParser:
    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._pending_cr = False

    @property
    def remainder(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[SSEFrame]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        return self._push(text)

    def close(self) -> list[SSEFrame]:
        """Flush the decoder. A trailing frame without its delimiter is dropped."""
        frames = self._push(self._decoder.decode(b"", final=True))
        if self._buffer.strip():
            logger.debug(f"[sse] Dropping incomplete frame: {self._buffer[:80]!r}")
        self._buffer = ""
        return frames

    def _push(self, text: str) -> list[SSEFrame]:
        if not text:
            return []
        # A "\r" at the end of a chunk may be the first half of "\r\n"
        if self._pending_cr:
            text = "\r" + text
            self._pending_cr = False
        if text.endswith("\r"):
            text = text[:-1]
            self._pending_cr = True
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")

        frames = []
        while FRAME_DELIMITER in self._buffer:
            raw, self._buffer = self._buffer.split(FRAME_DELIMITER, 1)
            frame = parse_frame(raw)
            if frame is not None:
                frames.append(frame)
        return frames


def parse_frame(raw: str) -> SSEFrame | None:
    event = "message"
    data_lines = []
    for line in raw.split("\n"):
        if not line or line.startswith(":"):
            continue
        if line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            value = line[len("data:"):]
            data_lines.append(value[1:] if value.startswith(" ") else value)
    if not data_lines and event == "message":
        return None
    return SSEFrame(event=event, data="".join(data_lines))


def to_stream_event(frame: SSEFrame):
    """Map a frame onto a stream event. Unknown or unparseable frames give None."""
    try:
        payload = json.loads(frame.data) if frame.data else {}
    except json.JSONDecodeError:
        logger.warning(f"[sse] Unparseable {frame.event} payload: {frame.data[:80]!r}")
        return None
    if not isinstance(payload, dict):
        return None

    if frame.event == "phase":
        name = payload.get("name") or payload.get("phase")
        return PhaseEvent(name=str(name)) if name else None
    if frame.event == "result":
        return ResultEvent(
            ai_message=str(payload.get("aiMessage") or ""),
            multiple_choices=payload.get("multipleChoices") or None,
            allow_multiple=bool(payload.get("allowMultiple", False)),
            status_signal=payload.get("statusSignal") or None,
        )
    if frame.event == "error":
        return ErrorEvent(message=str(payload.get("message") or payload.get("error") or ""))
    return None
