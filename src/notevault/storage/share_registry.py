"""Reverse index from public share tokens to (user, note) pairs."""

import logging
from typing import Iterator, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from notevault.config import config
from notevault.exceptions import MalformedDocumentError, ShareNotFoundError
from notevault.models.schema import (
    SAFE_PATH_COMPONENT_PATTERN,
    ShareEntry,
    generate_share_token,
)
from notevault.storage.documents import DocumentStore, JsonDirectoryStore

logger = logging.getLogger(__name__)


class ShareRegistry:
    """One document per share token.

    The registry does not know whether a note is already shared; the note's
    own ``shareId`` field is the source of truth for that, and callers check
    it before calling ``create``.
    """

    def __init__(self, store: Optional[DocumentStore] = None):
        self._store = store or JsonDirectoryStore(config.get_shared_dir())

    @staticmethod
    def _is_token_shaped(token: str) -> bool:
        return bool(token) and bool(SAFE_PATH_COMPONENT_PATTERN.match(token)) and ".." not in token

    def create(self, user_id: str, note_id: str) -> str:
        """Persist a new entry for (user_id, note_id) and return its token."""
        token = generate_share_token()
        entry = ShareEntry(user_id=user_id, note_id=note_id)
        self._store.put(token, entry.to_document())
        logger.info(f"Created share entry for {user_id}/{note_id}")
        return token

    def get(self, token: str) -> ShareEntry:
        """Return the full entry for ``token``.

        Raises:
            ShareNotFoundError: If the token is unknown or its document is unreadable.
        """
        if not self._is_token_shaped(token):
            raise ShareNotFoundError(token)
        try:
            document = self._store.get(token)
        except MalformedDocumentError as e:
            logger.warning(f"Share entry {token[:6]}... is malformed: {e}")
            raise ShareNotFoundError(token) from e
        if document is None:
            raise ShareNotFoundError(token)
        try:
            return ShareEntry.model_validate(document)
        except PydanticValidationError as e:
            logger.warning(f"Share entry {token[:6]}... has invalid fields: {e}")
            raise ShareNotFoundError(token) from e

    def resolve(self, token: str) -> Tuple[str, str]:
        """Return the (user_id, note_id) pair for ``token``."""
        entry = self.get(token)
        return entry.user_id, entry.note_id

    def revoke(self, token: Optional[str]) -> bool:
        """Delete the entry for ``token``; absent tokens are not an error.

        Returns:
            True if an entry was removed.
        """
        if not token or not self._is_token_shaped(token):
            return False
        removed = self._store.delete(token)
        if removed:
            logger.info(f"Revoked share entry {token[:6]}...")
        return removed

    def tokens(self) -> Iterator[str]:
        return self._store.keys()
