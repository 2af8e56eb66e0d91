# token_store.py
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

from models import CalendarAuthorization

logger = logging.getLogger(__name__)


class CalendarTokenStore:
    """
    Per-user Google Calendar authorizations, keyed by subject id.

    Kept in memory; when a path is given the whole map is also written to a
    JSON file (mode 0600, replaced atomically) so users stay connected across restarts.
    """

    def __init__(self, path: Optional[str] = None):
        self._path = Path(path) if path else None
        self._lock = threading.Lock()
        self._records: Dict[str, CalendarAuthorization] = {}
        self._load()

    def _load(self):
        if self._path is None or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text())
            for entry in data:
                record = CalendarAuthorization.model_validate(entry)
                self._records[record.user_id] = record
            logger.info(f"Loaded {len(self._records)} calendar authorizations from {self._path}")
        except (json.JSONDecodeError, OSError, ValueError) as e:
            logger.warning(f"Failed to load calendar authorizations from {self._path}: {e}")

    def _persist(self):
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = [record.model_dump() for record in self._records.values()]
        # mkstemp creates the file with mode 0600.
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self._path)
        except BaseException:
            os.unlink(tmp)
            raise

    def save(self, record: CalendarAuthorization):
        with self._lock:
            self._records[record.user_id] = record
            self._persist()
        logger.info(f"Saved calendar authorization for user '{record.user_id}'")

    def load(self, user_id: str) -> Optional[CalendarAuthorization]:
        return self._records.get(user_id)

    def delete(self, user_id: str) -> bool:
        with self._lock:
            removed = self._records.pop(user_id, None) is not None
            if removed:
                self._persist()
        if removed:
            logger.info(f"Deleted calendar authorization for user '{user_id}'")
        return removed

    def list_users(self) -> List[str]:
        return list(self._records)
