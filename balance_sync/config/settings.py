from decimal import Decimal
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Shared cache / backup wiring. Unset means in-memory adapters.
    REDIS_URL: Optional[str] = None
    BACKUP_DSN: Optional[str] = None
    BACKUP_DIR: Optional[str] = None

    EXPLORER_URL_MAINNET: str = "https://azorescan.com/api"
    EXPLORER_URL_TESTNET: str = "https://floripa.azorescan.com/api"
    EXPLORER_MAX_RETRIES: int = 3
    EXPLORER_HTTP_TIMEOUT_SECONDS: float = 10.0

    # Tier timeouts
    LIVE_FETCH_TIMEOUT_SECONDS: float = 20.0
    TIER_TIMEOUT_SECONDS: float = 3.0
    # Worker threads per (user, network) pair for live fetches; an abandoned
    # fetch keeps its thread until the explorer answers.
    LIVE_FETCH_WORKERS_PER_PAIR: int = 2
    LOCAL_CACHE_FRESHNESS_SECONDS: int = 60

    # Shared cache TTLs per data category
    BALANCE_CACHE_TTL_SECONDS: int = 300
    STATUS_CACHE_TTL_SECONDS: int = 86400
    METADATA_CACHE_TTL_SECONDS: int = 604800

    # Change detection
    CHANGE_THRESHOLD: Decimal = Decimal("0.01")
    MIN_ABSOLUTE_CHANGE: Decimal = Decimal("0")
    PLACEHOLDER_TOKENS: List[str] = ["AZE", "AZE-t", "cBRL", "STT"]

    # Reconciliation
    RECONCILE_TOLERANCE: Decimal = Decimal("0.000001")
    RECONCILE_MAX_AGE_SECONDS: int = 300
    HISTORY_MAX_ENTRIES: int = 100

    # Notification dedup
    DEDUP_WINDOW_SECONDS: int = 3600
    DEDUP_MAX_SIGNATURES: int = 50
    # "memory" keeps signatures per process; "shared" stores them in the shared cache
    DEDUP_BACKEND: str = "memory"

    # Polling cadence per subscription tier
    TIER_INTERVALS_SECONDS: Dict[str, int] = {"basic": 300, "pro": 120, "premium": 60}

    # Emergency defaults
    EMERGENCY_TOKENS: List[str] = ["cBRL", "STT"]
    EMERGENCY_WINDOW_SECONDS: int = 3600


settings = Settings()
