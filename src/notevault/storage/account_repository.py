"""Persistence for login accounts (``users.json``)."""
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from notevault.config import config
from notevault.exceptions import ErrorCode, MalformedDocumentError, StorageError
from notevault.models.schema import Account
from notevault.storage.documents import atomic_write_json, read_json

logger = logging.getLogger(__name__)


class AccountRepository:
    """All accounts in one JSON document keyed by username.

    Credential hashes are stored and returned untouched; this class never
    hashes or verifies anything.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = (
            config.get_absolute_path(Path(path)) if path else config.get_accounts_file()
        )
        self._lock = threading.RLock()

    def _load(self, strict: bool = False) -> Dict[str, Dict[str, Any]]:
        try:
            document = read_json(self.path)
            if document is None:
                return {}
            if not isinstance(document, dict):
                raise MalformedDocumentError(self.path.name)
        except MalformedDocumentError as e:
            if strict:
                raise StorageError(
                    "Accounts document is malformed",
                    operation="read",
                    path=str(self.path),
                    code=ErrorCode.INDEX_CORRUPTED,
                    original_error=e,
                ) from e
            logger.error(f"Accounts document is malformed, treating as empty: {e}")
            return {}
        return {k: v for k, v in document.items() if isinstance(v, dict)}

    def _save(self, documents: Dict[str, Dict[str, Any]]) -> None:
        atomic_write_json(self.path, documents)

    @staticmethod
    def _parse(username: str, document: Dict[str, Any]) -> Optional[Account]:
        try:
            return Account.model_validate({**document, "username": username})
        except PydanticValidationError as e:
            logger.warning(f"Skipping invalid account record {username!r}: {e}")
            return None

    def raw(self) -> Dict[str, Dict[str, Any]]:
        """The stored documents as-is (used by backup export)."""
        return self._load()

    def get(self, username: str) -> Optional[Account]:
        document = self._load().get(username)
        return self._parse(username, document) if document is not None else None

    def list_all(self) -> List[Account]:
        accounts = []
        for username, document in sorted(self._load().items()):
            account = self._parse(username, document)
            if account:
                accounts.append(account)
        return accounts

    def add(self, account: Account) -> bool:
        """Store ``account`` unless the username is taken.

        Returns:
            True if it was added.
        """
        with self._lock:
            documents = self._load(strict=True)
            if account.username in documents:
                return False
            documents[account.username] = account.to_document()
            self._save(documents)
        return True

    def put(self, account: Account) -> None:
        """Insert or replace ``account``."""
        with self._lock:
            documents = self._load(strict=True)
            documents[account.username] = account.to_document()
            self._save(documents)

    def remove(self, username: str) -> bool:
        with self._lock:
            documents = self._load(strict=True)
            if documents.pop(username, None) is None:
                return False
            self._save(documents)
        return True

    def merge(self, documents: Dict[str, Any]) -> List[str]:
        """Add account documents whose usernames are absent; never overwrite.

        Returns:
            Usernames that were added.
        """
        added: List[str] = []
        with self._lock:
            current = self._load(strict=True)
            for username, document in documents.items():
                if username in current or not isinstance(document, dict):
                    continue
                account = self._parse(username, document)
                if account is None:
                    continue
                current[username] = account.to_document()
                added.append(username)
            if added:
                self._save(current)
        return added
