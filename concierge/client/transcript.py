from __future__ import annotations
"""
Concierge — Chat Transcript
===========================
Ordered, append-only list of chat messages. A message can be superseded
(same id, same position, new content) or retracted, which is how the
transient "analyzing" placeholder is updated and replaced.
"""

import time
import uuid
from dataclasses import replace
from typing import Callable

from concierge.client.types import Message


class Transcript:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._messages: list[Message] = []
        self._listeners: list[Callable[[tuple[Message, ...]], None]] = []

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def subscribe(self, callback: Callable[[tuple[Message, ...]], None]) -> Callable[[], None]:
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback)

    def _notify(self):
        snapshot = self.messages
        for callback in list(self._listeners):
            callback(snapshot)

    def _stamp(self, message: Message) -> Message:
        return replace(
            message,
            id=message.id or uuid.uuid4().hex,
            timestamp=message.timestamp if message.timestamp is not None else self._clock(),
        )

    def append(self, message: Message) -> Message:
        stamped = self._stamp(message)
        self._messages.append(stamped)
        self._notify()
        return stamped

    def extend(self, messages) -> list[Message]:
        stamped = [self._stamp(m) for m in messages]
        self._messages.extend(stamped)
        if stamped:
            self._notify()
        return stamped

    def index_of(self, message_id: str) -> int:
        for i, m in enumerate(self._messages):
            if m.id == message_id:
                return i
        return -1

    def supersede(self, message_id: str, **changes) -> Message | None:
        """Swap in a new version of a message, keeping its id and position."""
        i = self.index_of(message_id)
        if i < 0:
            return None
        self._messages[i] = replace(self._messages[i], **changes)
        self._notify()
        return self._messages[i]

    def retract(self, message_id: str) -> bool:
        i = self.index_of(message_id)
        if i < 0:
            return False
        del self._messages[i]
        self._notify()
        return True

    def clear(self):
        self._messages.clear()
        self._notify()

    def to_wire(self) -> list[dict]:
        """History as sent to the chat endpoint: ``ai`` becomes ``assistant``."""
        return [
            {"role": "assistant" if m.role == "ai" else m.role, "content": m.content}
            for m in self._messages
        ]
