from abc import ABC, abstractmethod
from typing import Any, Dict

from balance_sync.sync.domain.notification import Notification


class NotificationEmitter(ABC):
    """
    Interface for persisting a notification and pushing it in real time.
    """
    @abstractmethod
    def emit(self, user_id: str, title: str, message: str, metadata: Dict[str, Any]) -> Notification:
        pass
