from abc import ABC, abstractmethod

from balance_sync.sync.domain.change_event import ChangeEvent


class NotificationDeduplicator(ABC):
    """
    Best-effort suppressor for notifications already sent within a window.
    Callers invoke mark_emitted exactly once, after successful delivery.
    """
    @abstractmethod
    def should_emit(self, event: ChangeEvent) -> bool:
        pass

    @abstractmethod
    def mark_emitted(self, event: ChangeEvent) -> None:
        pass
