from threading import Lock
from typing import Set

from balance_sync.sync.interfaces.session_guard import SessionGuard


class InMemorySessionGuard(SessionGuard):
    def __init__(self):
        self._authenticated: Set[str] = set()
        self._lock = Lock()

    def authenticate(self, user_id: str) -> None:
        with self._lock:
            self._authenticated.add(user_id)

    def revoke(self, user_id: str) -> None:
        with self._lock:
            self._authenticated.discard(user_id)

    def is_authenticated(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._authenticated
