from __future__ import annotations

import json
import threading
from pathlib import Path


def build_idempotency_key(appointment_id: str, trigger_rule: str) -> str:
    return f"reminder:{appointment_id}:{trigger_rule}"


class IdempotencyStore:
    """Set of reminder keys that have already been delivered to the provider.

    With ``path`` the keys survive restarts as a JSON list; without it the
    store lives in memory only.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._memory: set[str] = set()
        self._lock = threading.Lock()

    def _load(self) -> set[str]:
        if self.path is None:
            return set(self._memory)
        if not self.path.exists():
            return set()
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return set()
        if not isinstance(payload, list):
            return set()
        return {item for item in payload if isinstance(item, str)}

    def _save(self, keys: set[str]) -> None:
        if self.path is None:
            self._memory = keys
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(sorted(keys), indent=2),
            encoding="utf-8",
        )

    def has_been_sent(self, key: str) -> bool:
        with self._lock:
            return key in self._load()

    def mark_sent(self, key: str) -> None:
        with self._lock:
            keys = self._load()
            keys.add(key)
            self._save(keys)
