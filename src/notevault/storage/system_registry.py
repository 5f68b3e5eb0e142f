"""Installation-wide registry of known user identifiers."""

import logging
import threading
from typing import List, Optional

from notevault.config import config
from notevault.exceptions import MalformedDocumentError
from notevault.storage.documents import DocumentStore, JsonDirectoryStore

logger = logging.getLogger(__name__)

USERS_INDEX_KEY = "users-index"


class SystemRegistry:
    """Tracks every user identifier that has a store.

    Persisted as ``{"users": [...]}`` under the ``users-index`` key. Used for
    enumeration (backup, migration, housekeeping), never for access control.
    Entries are only ever appended.
    """

    def __init__(self, store: Optional[DocumentStore] = None):
        self._store = store or JsonDirectoryStore(config.get_system_dir())
        self._lock = threading.Lock()

    def _load(self) -> List[str]:
        try:
            document = self._store.get(USERS_INDEX_KEY)
        except MalformedDocumentError as e:
            logger.error(f"System users index is malformed, treating as empty: {e}")
            return []
        if not document:
            return []
        users = document.get("users", [])
        if not isinstance(users, list):
            logger.error("System users index has no user list, treating as empty")
            return []
        return [str(u) for u in users]

    def register(self, user_id: str) -> bool:
        """Add ``user_id`` if absent and persist immediately.

        Returns:
            True if the user was newly registered.
        """
        with self._lock:
            users = self._load()
            if user_id in users:
                return False
            users.append(user_id)
            self._store.put(USERS_INDEX_KEY, {"users": users})
        logger.info(f"Registered user store: {user_id}")
        return True

    def list_all(self) -> List[str]:
        """Return every registered user identifier in registration order."""
        return self._load()

    def contains(self, user_id: str) -> bool:
        return user_id in self._load()
