from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class DiffType(Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    NEW_TOKEN = "new_token"
    REMOVED_TOKEN = "removed_token"


@dataclass(frozen=True)
class FieldDiff:
    token: str
    local_value: str
    cached_value: str
    difference: str
    type: DiffType


@dataclass(frozen=True)
class ReconcileResult:
    synced: bool
    changes: List[FieldDiff] = field(default_factory=list)
    out_of_sync: bool = False
    error: Optional[str] = None
