import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from balance_sync.core.time.system_time_source import SystemTimeSource
from balance_sync.core.time.time_source import TimeSource
from balance_sync.sync.domain.notification import Notification
from balance_sync.sync.interfaces.notification_emitter import NotificationEmitter


class SqlNotificationEmitter(NotificationEmitter):
    """
    Persists notifications to a SQL table, then hands each one to the
    real-time push callback. A failed insert propagates and nothing is pushed.
    """

    def __init__(
        self,
        engine: Engine,
        push: Optional[Callable[[Notification], None]] = None,
        time_source: Optional[TimeSource] = None,
    ):
        self.engine = engine
        self.push = push
        self.time_source = time_source or SystemTimeSource()
        self.ensure_schema()

    @classmethod
    def from_dsn(cls, dsn: str, push: Optional[Callable[[Notification], None]] = None) -> "SqlNotificationEmitter":
        engine = create_engine(dsn, pool_pre_ping=True, future=True)
        return cls(engine, push=push)

    def ensure_schema(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS balance_notifications (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        sender TEXT NOT NULL,
                        title TEXT NOT NULL,
                        message TEXT NOT NULL,
                        metadata TEXT NOT NULL,
                        is_read BOOLEAN NOT NULL DEFAULT FALSE,
                        created_at TEXT NOT NULL
                    )
                    """
                )
            )

    def emit(self, user_id: str, title: str, message: str, metadata: Dict[str, Any]) -> Notification:
        notification = Notification(
            id=str(uuid4()),
            user_id=user_id,
            title=title,
            message=message,
            created_at=self.time_source.now(),
            metadata=dict(metadata),
        )
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO balance_notifications (
                        id, user_id, sender, title, message, metadata, is_read, created_at
                    )
                    VALUES (
                        :id, :user_id, :sender, :title, :message, :metadata, :is_read, :created_at
                    )
                    """
                ),
                {
                    "id": notification.id,
                    "user_id": notification.user_id,
                    "sender": notification.sender,
                    "title": notification.title,
                    "message": notification.message,
                    "metadata": json.dumps(notification.metadata, default=str),
                    "is_read": notification.is_read,
                    "created_at": notification.created_at.isoformat(),
                },
            )
        if self.push is not None:
            self.push(notification)
        return notification

    def list_for_user(self, user_id: str, limit: int = 50) -> List[Notification]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT id, user_id, sender, title, message, metadata, is_read, created_at
                    FROM balance_notifications
                    WHERE user_id = :user_id
                    ORDER BY created_at DESC
                    LIMIT :limit
                    """
                ),
                {"user_id": user_id, "limit": limit},
            ).fetchall()

        return [
            Notification(
                id=row.id,
                user_id=row.user_id,
                title=row.title,
                message=row.message,
                created_at=datetime.fromisoformat(row.created_at),
                metadata=json.loads(row.metadata),
                sender=row.sender,
                is_read=bool(row.is_read),
            )
            for row in rows
        ]
