from dataclasses import dataclass
from typing import Any, Optional

from balance_sync.sync.domain.exceptions import SourceUnavailableError


@dataclass(eq=False)
class ExplorerApiError(SourceUnavailableError):
    """Explorer answered, but its payload reports failure (status != "1")."""
    action: str
    message: str
    result: Optional[Any] = None

    def __str__(self) -> str:
        return f"explorer {self.action} failed: {self.message}"


class ExplorerHttpError(SourceUnavailableError):
    """Non-2xx response that survived the retry policy."""
    def __init__(self, status_code: int, action: str):
        super().__init__(f"explorer {action} returned HTTP {status_code}")
        self.status_code = status_code
        self.action = action
