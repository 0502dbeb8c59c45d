from abc import ABC, abstractmethod


class SessionGuard(ABC):
    """
    Answers whether a user's session is still authenticated.
    Consulted before any tier is queried on the user's behalf.
    """
    @abstractmethod
    def is_authenticated(self, user_id: str) -> bool:
        pass
