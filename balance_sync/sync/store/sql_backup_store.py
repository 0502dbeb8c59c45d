import json
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.exceptions import CacheError
from balance_sync.sync.interfaces.persistent_backup import PersistentBackup


class SqlBackupStore(PersistentBackup):
    """
    Last-known-good snapshots in a SQL table, one row per user.
    Postgres in production; the statements also run on SQLite.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.ensure_schema()

    @classmethod
    def from_dsn(cls, dsn: str, timeout_seconds: float = 3.0) -> "SqlBackupStore":
        backend = make_url(dsn).get_backend_name()
        options = {}
        if backend == "postgresql":
            options = {
                "pool_timeout": timeout_seconds,
                "connect_args": {
                    "connect_timeout": max(1, int(timeout_seconds)),
                    "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
                },
            }
        elif backend == "sqlite":
            options = {"connect_args": {"timeout": timeout_seconds}}
        engine = create_engine(dsn, pool_pre_ping=True, future=True, **options)
        return cls(engine)

    def ensure_schema(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS balance_backups (
                        user_id TEXT PRIMARY KEY,
                        network TEXT NOT NULL,
                        address TEXT NOT NULL,
                        captured_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        payload TEXT NOT NULL
                    )
                    """
                )
            )

    def get(self, user_id: str) -> Optional[BalanceSnapshot]:
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    text(
                        """
                        SELECT payload
                        FROM balance_backups
                        WHERE user_id = :user_id
                        """
                    ),
                    {"user_id": user_id},
                ).first()
        except SQLAlchemyError as e:
            raise CacheError(f"backup read failed for {user_id}: {e}") from e
        if not row:
            return None
        return BalanceSnapshot.from_dict(json.loads(row.payload))

    def put(self, user_id: str, snapshot: BalanceSnapshot) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text(
                        """
                        INSERT INTO balance_backups (
                            user_id,
                            network,
                            address,
                            captured_at,
                            updated_at,
                            payload
                        )
                        VALUES (
                            :user_id,
                            :network,
                            :address,
                            :captured_at,
                            :updated_at,
                            :payload
                        )
                        ON CONFLICT (user_id)
                        DO UPDATE SET
                          network = EXCLUDED.network,
                          address = EXCLUDED.address,
                          captured_at = EXCLUDED.captured_at,
                          updated_at = EXCLUDED.updated_at,
                          payload = EXCLUDED.payload
                        """
                    ),
                    {
                        "user_id": user_id,
                        "network": snapshot.network.value,
                        "address": snapshot.address,
                        "captured_at": snapshot.captured_at.isoformat(),
                        "updated_at": datetime.now(timezone.utc).isoformat(),
                        "payload": json.dumps(snapshot.to_dict()),
                    },
                )
        except SQLAlchemyError as e:
            raise CacheError(f"backup write failed for {user_id}: {e}") from e
