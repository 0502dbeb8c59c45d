from threading import Lock
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from balance_sync.core.time.system_time_source import SystemTimeSource
from balance_sync.core.time.time_source import TimeSource
from balance_sync.sync.domain.notification import Notification
from balance_sync.sync.interfaces.notification_emitter import NotificationEmitter


class InMemoryNotificationEmitter(NotificationEmitter):
    """
    Records notifications in memory and optionally pushes each one.
    """

    def __init__(
        self,
        push: Optional[Callable[[Notification], None]] = None,
        time_source: Optional[TimeSource] = None,
    ):
        self.push = push
        self.time_source = time_source or SystemTimeSource()
        self._records: List[Notification] = []
        self._lock = Lock()

    def emit(self, user_id: str, title: str, message: str, metadata: Dict[str, Any]) -> Notification:
        notification = Notification(
            id=str(uuid4()),
            user_id=user_id,
            title=title,
            message=message,
            created_at=self.time_source.now(),
            metadata=dict(metadata),
        )
        with self._lock:
            self._records.append(notification)
        if self.push is not None:
            self.push(notification)
        return notification

    def list_for_user(self, user_id: str) -> List[Notification]:
        with self._lock:
            return [n for n in self._records if n.user_id == user_id]

    @property
    def records(self) -> List[Notification]:
        with self._lock:
            return list(self._records)
