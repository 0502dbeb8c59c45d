import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class StructuredRuntimeLogger:
    """
    Lightweight JSON-lines logger for cycle/scheduler/reconciler paths.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger("balance_sync.runtime")

    def emit(self, event_type: str, level: int = logging.INFO, **fields: Any) -> None:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
        }
        payload.update(fields)
        self._logger.log(level, json.dumps(payload, default=str, ensure_ascii=True))

    def warning(self, event_type: str, **fields: Any) -> None:
        self.emit(event_type, level=logging.WARNING, **fields)
