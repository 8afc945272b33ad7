from __future__ import annotations

import threading
from dataclasses import replace

from dental_comms.domain.models import IncomingMessage


class IncomingMessageLog:
    """Append-only record of every valid inbound message, matched or not."""

    def __init__(self) -> None:
        self._messages: dict[str, IncomingMessage] = {}
        self._lock = threading.Lock()

    def record(self, message: IncomingMessage) -> IncomingMessage:
        with self._lock:
            existing = self._messages.get(message.message_id)
            if existing is not None:
                return existing
            self._messages[message.message_id] = message
            return message

    def mark_processed(self, message_id: str) -> IncomingMessage:
        with self._lock:
            message = self._messages[message_id]
            if not message.processed:
                message = replace(message, processed=True)
                self._messages[message_id] = message
            return message

    def unmatched(self) -> list[IncomingMessage]:
        with self._lock:
            return [message for message in self._messages.values() if message.appointment_id is None]

    def all(self) -> list[IncomingMessage]:
        with self._lock:
            return list(self._messages.values())
