"""Service layer for note operations.

Merge policy lives here, not in the store: saves are always issued as
patches so createdAt, the share token and the password hash survive any
save that does not explicitly change them.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from notevault.config import config
from notevault.exceptions import (
    InvalidPasswordError,
    NoteNotFoundError,
    PasswordRequiredError,
    ShareNotFoundError,
    ValidationError,
)
from notevault.models.schema import (
    Note,
    NoteMetadata,
    NoteSummary,
    SharedNote,
    WriteMode,
)
from notevault.security import BcryptHasher, PasswordHasher
from notevault.services.search_service import summarize
from notevault.storage.markdown_parser import MarkdownParser
from notevault.storage.share_registry import ShareRegistry
from notevault.storage.user_store import UserStore, check_identifier
from notevault.utils import sanitize_filename, unique_filenames

logger = logging.getLogger(__name__)

MEDIA_URL_PREFIX = "/api/media"
SHARE_URL_PATH = "shared"


class NoteService:
    """Note operations on behalf of a user."""

    def __init__(
        self,
        store: Optional[UserStore] = None,
        shares: Optional[ShareRegistry] = None,
        hasher: Optional[PasswordHasher] = None,
        parser: Optional[MarkdownParser] = None,
    ):
        """Initialize the service.

        Args:
            store: Per-user note storage. Created with defaults if None.
            shares: Share token registry. Created with defaults if None.
            hasher: Password hash/verify capability (bcrypt by default).
            parser: Markdown import/export parser.
        """
        self.store = store or UserStore()
        self.shares = shares or ShareRegistry()
        self.hasher = hasher or BcryptHasher()
        self.parser = parser or MarkdownParser()

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_note(self, user_id: str, title: Optional[str] = None) -> str:
        """Create an empty note and return its identifier."""
        note = Note(title=title)
        while self.store.exists(user_id, note.id):
            note = Note(title=title)
        self.store.write(user_id, note)
        logger.info(f"Created note {user_id}/{note.id}")
        return note.id

    def import_markdown(
        self, user_id: str, content: str, title: Optional[str] = None
    ) -> Note:
        """Create a note from a markdown document with optional frontmatter."""
        if not content or not content.strip():
            raise ValidationError("Imported markdown is empty", field="content")
        parsed = self.parser.parse(content, title=title)
        note = Note(
            title=parsed.title,
            content=parsed.content,
            tags=parsed.tags,
            groups=parsed.groups,
        )
        stored = self.store.write(user_id, note)
        logger.info(f"Imported markdown as note {user_id}/{note.id}")
        return stored

    def get_note(self, user_id: str, note_id: str) -> Note:
        return self.store.read(user_id, note_id)

    def _protection_fields(
        self,
        user_id: str,
        note_id: str,
        is_password_protected: Optional[bool],
        password: Optional[str],
    ) -> Dict[str, Any]:
        """Metadata fields implementing a password-protection intent.

        A new password is hashed; enabling protection without one keeps the
        existing hash, and is refused if there is none.
        """
        if is_password_protected is None and not password:
            return {}
        if is_password_protected is False:
            return {"is_password_protected": False, "password_hash": None}
        if password:
            return {
                "is_password_protected": True,
                "password_hash": self.hasher.hash(password),
            }
        try:
            current = self.store.read_metadata(user_id, note_id)
        except NoteNotFoundError:
            current = None
        if current is None or not current.password_hash:
            raise ValidationError(
                "A password is required to enable protection", field="password"
            )
        return {"is_password_protected": True}

    def save_note(
        self,
        user_id: str,
        note_id: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        tags: Optional[List[str]] = None,
        groups: Optional[List[str]] = None,
        is_password_protected: Optional[bool] = None,
        password: Optional[str] = None,
    ) -> Note:
        """Upsert a note. Arguments left as None keep their stored value."""
        check_identifier(note_id, "Note ID")
        fields: Dict[str, Any] = {}
        if title is not None:
            fields["title"] = title
        if content is not None:
            fields["content"] = content
        if tags is not None:
            fields["tags"] = tags
        if groups is not None:
            fields["groups"] = groups
        fields.update(
            self._protection_fields(user_id, note_id, is_password_protected, password)
        )
        with self.store.get_user_lock(user_id):
            saved = self.store.write(
                user_id, Note(id=note_id, **fields), mode=WriteMode.PATCH
            )
        logger.debug(f"Saved note {user_id}/{note_id}")
        return saved

    def update_metadata(
        self,
        user_id: str,
        note_id: str,
        tags: Optional[List[str]] = None,
        groups: Optional[List[str]] = None,
        is_password_protected: Optional[bool] = None,
        password: Optional[str] = None,
    ) -> NoteMetadata:
        """Change labels or protection of an existing note."""
        fields: Dict[str, Any] = {}
        if tags is not None:
            fields["tags"] = tags
        if groups is not None:
            fields["groups"] = groups
        fields.update(
            self._protection_fields(user_id, note_id, is_password_protected, password)
        )
        return self.store.update_metadata(user_id, note_id, **fields)

    def verify_note_password(self, user_id: str, note_id: str, password: str) -> bool:
        """Check ``password`` against a note; unprotected notes always pass."""
        metadata = self.store.read_metadata(user_id, note_id)
        if not metadata.is_password_protected:
            return True
        return self.hasher.verify(password or "", metadata.password_hash or "")

    def delete_note(self, user_id: str, note_id: str) -> bool:
        """Delete a note and its share entry. Deleting a missing note is a no-op.

        Returns:
            True if anything was removed.
        """
        with self.store.get_user_lock(user_id):
            try:
                share_id = self.store.read_metadata(user_id, note_id).share_id
            except NoteNotFoundError:
                share_id = None
            revoked = self.shares.revoke(share_id)
            removed = self.store.delete(user_id, note_id)
        return removed or revoked

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_notes(self, user_id: str) -> List[NoteSummary]:
        """Summaries of every readable note, most recently updated first."""
        return [
            NoteSummary(
                id=note.id,
                name=note.title,
                tags=list(note.tags),
                groups=list(note.groups),
                is_password_protected=note.is_password_protected,
                is_shared=note.is_shared,
                created_at=note.created_at,
                updated_at=note.updated_at,
                summary=summarize(note.content),
            )
            for note in self.store.iter_notes(user_id)
        ]

    def list_groups(self, user_id: str) -> List[str]:
        return sorted({g for n in self.store.list_notes(user_id) for g in n.groups})

    def list_tags(self, user_id: str) -> List[str]:
        return sorted({t for n in self.store.list_notes(user_id) for t in n.tags})

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    def create_share(self, user_id: str, note_id: str) -> str:
        """Return the note's share token, creating one if needed.

        The registry entry is written before the note records the token, so
        an interruption leaves at worst an unreferenced registry entry.
        """
        with self.store.get_user_lock(user_id):
            metadata = self.store.read_metadata(user_id, note_id)
            if metadata.share_id:
                try:
                    if self.shares.resolve(metadata.share_id) == (user_id, note_id):
                        return metadata.share_id
                except ShareNotFoundError:
                    pass
                logger.warning(
                    f"Share entry for {user_id}/{note_id} is missing, issuing a new token"
                )
            token = self.shares.create(user_id, note_id)
            self.store.update_metadata(user_id, note_id, share_id=token)
        return token

    def revoke_share(self, user_id: str, note_id: str) -> bool:
        """Remove a note's share entry and clear its token.

        Returns:
            False if the note was not shared.
        """
        with self.store.get_user_lock(user_id):
            metadata = self.store.read_metadata(user_id, note_id)
            if not metadata.share_id:
                return False
            self.shares.revoke(metadata.share_id)
            self.store.update_metadata(user_id, note_id, share_id=None)
        logger.info(f"Revoked share for {user_id}/{note_id}")
        return True

    def resolve_share(self, token: str, password: Optional[str] = None) -> SharedNote:
        """Return what a share link reveals.

        Raises:
            ShareNotFoundError: Unknown token, deleted note, or a note that no
                longer carries this token.
            PasswordRequiredError: The note is protected and no password given.
            InvalidPasswordError: The password does not match.
        """
        user_id, note_id = self.shares.resolve(token)
        try:
            note = self.store.read(user_id, note_id)
        except NoteNotFoundError as e:
            raise ShareNotFoundError(token) from e
        if note.share_id != token:
            raise ShareNotFoundError(token)

        if note.is_password_protected:
            if not password:
                raise PasswordRequiredError()
            if not self.hasher.verify(password, note.password_hash or ""):
                raise InvalidPasswordError()

        return SharedNote(
            title=note.title,
            content=note.content,
            tags=list(note.tags),
            created_at=note.created_at,
            updated_at=note.updated_at,
        )

    def share_url(self, token: str) -> str:
        return f"{config.public_url_base.rstrip('/')}/{SHARE_URL_PATH}/{token}"

    # ------------------------------------------------------------------
    # Media and export
    # ------------------------------------------------------------------

    def upload_media(
        self, user_id: str, note_id: str, filename: str, data: bytes
    ) -> str:
        """Store an image for a note and return its retrieval path."""
        if not self.store.exists(user_id, note_id):
            raise NoteNotFoundError(note_id, user_id=user_id)
        stored = self.store.save_media(user_id, note_id, filename, data)
        return f"{MEDIA_URL_PREFIX}/{user_id}/{note_id}/{stored}"

    def export_markdown(self, user_id: str) -> List[Tuple[str, str]]:
        """Every readable note as a (file name, markdown) pair."""
        notes = list(self.store.iter_notes(user_id))
        names = unique_filenames(sanitize_filename(n.title) for n in notes)
        return [(name, self.parser.render(note)) for name, note in zip(names, notes)]
