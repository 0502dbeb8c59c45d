from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict


@dataclass(frozen=True)
class Notification:
    id: str
    user_id: str
    title: str
    message: str
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    sender: str = "coinage"
    is_read: bool = False
