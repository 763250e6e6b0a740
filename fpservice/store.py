"""Template store contract

The session engine only reads templates; persisting an enrollment result is
the caller's job. ``BiometricDatabase`` in the web layer implements the same
contract on SQLite.
"""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Protocol, Tuple


class TemplateStore(Protocol):

    def load_template(self, user_id: str) -> Optional[bytes]: ...

    def iterate_templates(self) -> Iterable[Tuple[str, bytes]]:
        """All ``(user_id, template)`` pairs. May change between calls."""
        ...


class InMemoryTemplateStore:
    """Dict-backed store for tests and the standalone engine."""

    def __init__(self, templates: Optional[Dict[str, bytes]] = None) -> None:
        self._lock = threading.RLock()
        self._templates: Dict[str, bytes] = dict(templates or {})

    def load_template(self, user_id: str) -> Optional[bytes]:
        with self._lock:
            return self._templates.get(user_id)

    def iterate_templates(self) -> List[Tuple[str, bytes]]:
        with self._lock:
            return list(self._templates.items())

    def save_template(self, user_id: str, template: bytes) -> None:
        with self._lock:
            self._templates[user_id] = bytes(template)
