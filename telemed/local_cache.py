# telemed/local_cache.py - JSON file fallback store
import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder

from .config import get_settings

logger = logging.getLogger(__name__)

APPOINTMENTS_KEY = "appointments"
DOCTORS_KEY = "doctors"


class LocalStore:
    """Last-known lists of appointments and doctors, one JSON file per key.

    Used when the database is not configured or a load fails. Nothing keeps it
    consistent with the database.
    """

    def __init__(self, directory: Optional[str] = None):
        self.directory = directory or get_settings().local_cache_dir
        self._lock = threading.Lock()

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    def read(self, key: str) -> List[Dict[str, Any]]:
        path = self._path(key)
        if not os.path.exists(path):
            return []
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning(f"Local cache '{key}' is unreadable, ignoring it: {e}")
            return []
        return data if isinstance(data, list) else []

    def write(self, key: str, items: List[Any]) -> None:
        payload = jsonable_encoder(items)
        with self._lock:
            try:
                os.makedirs(self.directory, exist_ok=True)
                tmp_path = self._path(key) + ".tmp"
                with open(tmp_path, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh)
                os.replace(tmp_path, self._path(key))
            except OSError as e:
                logger.warning(f"Could not write local cache '{key}': {e}")

    def append(self, key: str, item: Dict[str, Any]) -> Dict[str, Any]:
        items = self.read(key)
        items.append(jsonable_encoder(item))
        self.write(key, items)
        return item

    def clear(self, key: Optional[str] = None) -> None:
        keys = [key] if key else [APPOINTMENTS_KEY, DOCTORS_KEY]
        for k in keys:
            path = self._path(k)
            if os.path.exists(path):
                os.remove(path)
