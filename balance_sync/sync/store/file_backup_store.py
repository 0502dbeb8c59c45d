import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from typing import Optional

from balance_sync.sync.domain.balance_snapshot import BalanceSnapshot
from balance_sync.sync.domain.exceptions import CacheError
from balance_sync.sync.interfaces.persistent_backup import PersistentBackup

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class FileBackupStore(PersistentBackup):
    """
    File-backed last-known-good store.
    One JSON document per user, replaced atomically on every write.
    """

    def __init__(self, base_dir: str):
        self.base_dir = base_dir
        os.makedirs(base_dir, exist_ok=True)

    def _get_file_path(self, user_id: str) -> str:
        safe_name = _UNSAFE.sub("_", str(user_id))
        return os.path.join(self.base_dir, f"balances_{safe_name}.json")

    def get(self, user_id: str) -> Optional[BalanceSnapshot]:
        path = self._get_file_path(user_id)
        if not os.path.exists(path):
            return None

        try:
            with open(path, "r") as f:
                data = json.load(f)
        except OSError as e:
            raise CacheError(f"cannot read backup for {user_id}: {e}") from e
        except ValueError as e:
            logger.warning(f"Ignoring corrupt backup file {path}: {e}")
            return None

        if data.get("user_id") != user_id:
            return None
        try:
            return BalanceSnapshot.from_dict(data["snapshot"])
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable backup snapshot in {path}: {e}")
            return None

    def put(self, user_id: str, snapshot: BalanceSnapshot) -> None:
        path = self._get_file_path(user_id)
        data = {
            "user_id": user_id,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "snapshot": snapshot.to_dict(),
        }

        try:
            with tempfile.NamedTemporaryFile("w", dir=self.base_dir, delete=False) as tmp_file:
                json.dump(data, tmp_file, indent=2)
                tmp_name = tmp_file.name
            os.replace(tmp_name, path)
        except OSError as e:
            raise CacheError(f"cannot write backup for {user_id}: {e}") from e
