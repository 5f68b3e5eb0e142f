"""Per-user note storage: metadata index, markdown content and media.

Layout under the data directory::

    <user>/database.json         {"notes": {"<id>": {metadata}}}
    <user>/notes/<id>.md         content
    <user>/notes/media/<id>/     uploaded files

The index is the only file shared between notes of a user, so every
read-modify-write of it happens under a per-user lock. Content is always
written before the index entry that points at it.
"""

import datetime
import logging
import os
import re
import secrets
import shutil
import threading
import time
import weakref
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from notevault.config import SYSTEM_DIR_NAME, config
from notevault.exceptions import (
    ErrorCode,
    MalformedDocumentError,
    NoteNotFoundError,
    StorageError,
    ValidationError,
)
from notevault.models.schema import (
    Note,
    NoteMetadata,
    WriteMode,
    utc_now,
    validate_safe_path_component,
)
from notevault.storage.documents import (
    atomic_write_bytes,
    atomic_write_json,
    atomic_write_text,
    read_json,
    remove_file,
)
from notevault.storage.legacy_reader import LegacyFormatReader
from notevault.storage.system_registry import SystemRegistry

logger = logging.getLogger(__name__)

INDEX_FILENAME = "database.json"
NOTES_DIRNAME = "notes"
MEDIA_DIRNAME = "media"
CONTENT_SUFFIX = ".md"

ALLOWED_MEDIA_EXTENSIONS = frozenset({".jpeg", ".jpg", ".png", ".gif", ".webp", ".svg"})

# Directory names inside a user directory that are never legacy notes
_RESERVED_USER_ENTRIES = (NOTES_DIRNAME,)

_HEADING_RE = re.compile(r"^#\s+(.+?)\s*#*\s*$")


def check_identifier(value: str, field_name: str) -> str:
    """Path-component validation surfaced as a domain ValidationError."""
    try:
        return validate_safe_path_component(value, field_name)
    except ValueError as e:
        raise ValidationError(
            str(e), field=field_name, value=value, code=ErrorCode.PATH_TRAVERSAL_DETECTED
        ) from e


def title_from_markdown(content: str) -> Optional[str]:
    """Return the text of the first level-one heading, if any."""
    for line in content.splitlines():
        match = _HEADING_RE.match(line.strip())
        if match:
            return match.group(1)
    return None


class UserStore:
    """Durable CRUD over each user's notes.

    One instance serves every user of an installation; all per-user state
    lives on disk. Reads fall back to ``LegacyFormatReader`` for notes that
    predate the index.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        registry: Optional[SystemRegistry] = None,
        legacy_reader: Optional[LegacyFormatReader] = None,
        media_max_bytes: Optional[int] = None,
    ):
        """Initialize the store.

        Args:
            data_dir: Root holding one directory per user. Defaults to
                      config.data_dir.
            registry: System registry that new users are recorded in.
            legacy_reader: Reader for pre-index note layouts.
            media_max_bytes: Upload limit; defaults to config.media_max_bytes.
        """
        self.data_dir = (
            config.get_absolute_path(Path(data_dir)) if data_dir else config.get_data_dir()
        )
        self.registry = registry or SystemRegistry()
        self.legacy_reader = legacy_reader or LegacyFormatReader()
        self.media_max_bytes = media_max_bytes or config.media_max_bytes

        # Per-user locks guarding the index file (WeakValueDictionary so
        # locks for idle users are garbage collected)
        self._user_locks: weakref.WeakValueDictionary[str, threading.RLock] = (
            weakref.WeakValueDictionary()
        )
        self._user_locks_lock = threading.Lock()

        logger.info(f"UserStore initialized: data_dir={self.data_dir}")

    # ------------------------------------------------------------------
    # Paths and locking
    # ------------------------------------------------------------------

    def _check_user(self, user_id: str) -> str:
        check_identifier(user_id, "User ID")
        if user_id == SYSTEM_DIR_NAME:
            raise ValidationError(
                f"'{SYSTEM_DIR_NAME}' is reserved", field="User ID", value=user_id
            )
        return user_id

    def user_dir(self, user_id: str) -> Path:
        return self.data_dir / self._check_user(user_id)

    def index_path(self, user_id: str) -> Path:
        return self.user_dir(user_id) / INDEX_FILENAME

    def notes_dir(self, user_id: str) -> Path:
        return self.user_dir(user_id) / NOTES_DIRNAME

    def content_path(self, user_id: str, note_id: str) -> Path:
        check_identifier(note_id, "Note ID")
        return self.notes_dir(user_id) / f"{note_id}{CONTENT_SUFFIX}"

    def media_dir(self, user_id: str, note_id: str) -> Path:
        check_identifier(note_id, "Note ID")
        return self.notes_dir(user_id) / MEDIA_DIRNAME / note_id

    def get_user_lock(self, user_id: str) -> threading.RLock:
        """Get or create the lock serializing index mutations for a user."""
        with self._user_locks_lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._user_locks[user_id] = lock
            return lock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ensure(self, user_id: str) -> Path:
        """Create the user's directories and empty index if missing.

        Idempotent. Registers the user in the system registry.

        Returns:
            The user's directory.
        """
        user_dir = self.user_dir(user_id)
        with self.get_user_lock(user_id):
            self.notes_dir(user_id).mkdir(parents=True, exist_ok=True)
            index_path = self.index_path(user_id)
            if not index_path.exists():
                atomic_write_json(index_path, {"notes": {}})
                logger.info(f"Created note index for user {user_id}")
        self.registry.register(user_id)
        return user_dir

    def list_user_dirs(self) -> List[str]:
        """User identifiers that have a directory on disk."""
        if not self.data_dir.is_dir():
            return []
        users = []
        for entry in sorted(self.data_dir.iterdir()):
            if not entry.is_dir() or entry.name == SYSTEM_DIR_NAME:
                continue
            try:
                self._check_user(entry.name)
            except ValidationError:
                logger.warning(f"Ignoring directory with unsafe name: {entry.name!r}")
                continue
            users.append(entry.name)
        return users

    # ------------------------------------------------------------------
    # Index access
    # ------------------------------------------------------------------

    def _load_index(self, user_id: str, strict: bool) -> Dict[str, Dict[str, Any]]:
        """Load the ``notes`` mapping of a user's index.

        With ``strict`` a malformed index raises; otherwise it is logged and
        read as empty so listing and reading never crash on corruption.
        """
        index_path = self.index_path(user_id)
        try:
            document = read_json(index_path)
            if document is None:
                return {}
            if not isinstance(document, dict) or not isinstance(
                document.get("notes", {}), dict
            ):
                raise MalformedDocumentError(INDEX_FILENAME, user_id=user_id)
        except MalformedDocumentError as e:
            if strict:
                raise MalformedDocumentError(
                    INDEX_FILENAME, user_id=user_id, original_error=e.original_error
                ) from e
            logger.error(f"Note index for user {user_id} is malformed: {e}")
            return {}
        return dict(document.get("notes", {}))

    def _save_index(self, user_id: str, notes: Dict[str, Dict[str, Any]]) -> None:
        atomic_write_json(self.index_path(user_id), {"notes": notes})

    def read_index(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        """Raw ``noteId -> metadata document`` mapping (empty if unreadable)."""
        return self._load_index(user_id, strict=False)

    def read_content(self, user_id: str, note_id: str) -> Optional[str]:
        """Raw content of a current-format note, or None if there is no file."""
        path = self.content_path(user_id, note_id)
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(
                f"Failed to read note {note_id}",
                operation="read",
                path=f"{note_id}{CONTENT_SUFFIX}",
                original_error=e,
            ) from e

    def _metadata_from_entry(
        self, user_id: str, note_id: str, entry: Any
    ) -> NoteMetadata:
        if not isinstance(entry, dict):
            raise MalformedDocumentError(INDEX_FILENAME, note_id=note_id, user_id=user_id)
        try:
            return NoteMetadata.from_index_entry(note_id, entry)
        except PydanticValidationError as e:
            raise MalformedDocumentError(
                INDEX_FILENAME, note_id=note_id, user_id=user_id, original_error=e
            ) from e

    def _indexed_metadata(
        self, user_id: str, note_id: str, index: Dict[str, Dict[str, Any]]
    ) -> NoteMetadata:
        try:
            return self._metadata_from_entry(user_id, note_id, index[note_id])
        except MalformedDocumentError as e:
            logger.warning(f"Unreadable index entry {user_id}/{note_id}: {e}")
            raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read(self, user_id: str, note_id: str) -> Note:
        """Return a note with its content.

        Resolution order: the metadata index (content file missing reads as
        empty), then the legacy per-note layouts.

        Raises:
            NoteNotFoundError: If no format has the note (MalformedDocumentError
                when a document exists but cannot be parsed).
        """
        check_identifier(note_id, "Note ID")
        index = self._load_index(user_id, strict=False)
        if note_id in index:
            metadata = self._indexed_metadata(user_id, note_id, index)
            content = self.read_content(user_id, note_id)
            if content is None:
                logger.warning(
                    f"Note {user_id}/{note_id} is indexed but has no content file"
                )
                content = ""
            return Note.from_parts(metadata, content)
        return self.legacy_reader.read(self.user_dir(user_id), note_id, user_id=user_id)

    def read_metadata(self, user_id: str, note_id: str) -> NoteMetadata:
        """Return a note's metadata without loading index-backed content."""
        check_identifier(note_id, "Note ID")
        index = self._load_index(user_id, strict=False)
        if note_id in index:
            return self._indexed_metadata(user_id, note_id, index)
        return self.legacy_reader.read(
            self.user_dir(user_id), note_id, user_id=user_id
        ).metadata()

    def exists(self, user_id: str, note_id: str) -> bool:
        check_identifier(note_id, "Note ID")
        if note_id in self._load_index(user_id, strict=False):
            return True
        return self.legacy_reader.has_legacy_note(self.user_dir(user_id), note_id)

    def legacy_ids(self, user_id: str) -> List[str]:
        """Legacy-only notes: per-note directories not shadowed by the index."""
        index = self._load_index(user_id, strict=False)
        return [
            note_id
            for note_id in self.legacy_reader.list_legacy_ids(
                self.user_dir(user_id), reserved=_RESERVED_USER_ENTRIES
            )
            if note_id not in index
        ]

    def list_notes(self, user_id: str, include_legacy: bool = True) -> List[NoteMetadata]:
        """All notes' metadata, most recently updated first.

        Entries that cannot be parsed are logged and skipped. Ties keep index
        order (Python's sort is stable).
        """
        notes: List[NoteMetadata] = []
        for note_id, entry in self._load_index(user_id, strict=False).items():
            try:
                notes.append(self._metadata_from_entry(user_id, note_id, entry))
            except (MalformedDocumentError, ValidationError) as e:
                logger.warning(f"Skipping unreadable index entry {user_id}/{note_id}: {e}")
        if include_legacy:
            for note_id in self.legacy_ids(user_id):
                try:
                    notes.append(
                        self.legacy_reader.read(
                            self.user_dir(user_id), note_id, user_id=user_id
                        ).metadata()
                    )
                except NoteNotFoundError as e:
                    logger.warning(f"Skipping unreadable legacy note {user_id}/{note_id}: {e}")
        notes.sort(key=lambda n: n.updated_at, reverse=True)
        return notes

    def iter_notes(self, user_id: str) -> Iterator[Note]:
        """Yield every readable note with content, in list order."""
        for metadata in self.list_notes(user_id):
            try:
                yield self.read(user_id, metadata.id)
            except (NoteNotFoundError, StorageError) as e:
                logger.warning(f"Skipping unreadable note {user_id}/{metadata.id}: {e}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write(
        self,
        user_id: str,
        note: Note,
        mode: WriteMode = WriteMode.REPLACE,
        touch: bool = True,
    ) -> Note:
        """Upsert a note's content and metadata.

        In REPLACE mode the stored metadata becomes exactly ``note``'s, so the
        caller must carry forward createdAt, shareId and the password hash.
        In PATCH mode only the fields explicitly set on ``note`` are merged
        over the stored entry, and content is only replaced when set.

        Content is written before the index entry so a concurrent reader can
        never see metadata pointing at content that is not there yet.

        Args:
            touch: Refresh updatedAt to now (disable to preserve imported
                   timestamps).

        Returns:
            The note as stored.
        """
        self.ensure(user_id)
        note_id = check_identifier(note.id, "Note ID")
        with self.get_user_lock(user_id):
            index = self._load_index(user_id, strict=True)

            if mode == WriteMode.PATCH:
                stored = self._stored_note(user_id, note_id, index)
                updates = {
                    name: getattr(note, name)
                    for name in note.model_fields_set
                    if name != "id"
                }
                merged = stored.model_copy(update=updates) if stored else note
                result = Note.model_validate(merged.model_dump())
                write_content = stored is None or "content" in note.model_fields_set
            else:
                result = Note.model_validate(note.model_dump())
                write_content = True

            if touch:
                result.updated_at = utc_now()
                if result.updated_at < result.created_at:
                    result.created_at = result.updated_at

            if write_content:
                atomic_write_text(self.content_path(user_id, note_id), result.content)
            elif self.read_content(user_id, note_id) is None:
                # Every indexed note has a (possibly empty) content file
                atomic_write_text(self.content_path(user_id, note_id), result.content)

            index[note_id] = result.to_index_entry()
            self._save_index(user_id, index)

        logger.debug(f"Wrote note {user_id}/{note_id} ({mode.value})")
        return result

    def _stored_note(
        self, user_id: str, note_id: str, index: Dict[str, Dict[str, Any]]
    ) -> Optional[Note]:
        """The current note (index or legacy) for merging, or None."""
        if note_id in index:
            metadata = self._metadata_from_entry(user_id, note_id, index[note_id])
            return Note.from_parts(metadata, self.read_content(user_id, note_id) or "")
        try:
            return self.legacy_reader.read(self.user_dir(user_id), note_id, user_id=user_id)
        except NoteNotFoundError:
            return None

    def update_metadata(self, user_id: str, note_id: str, **fields: Any) -> NoteMetadata:
        """Patch metadata fields of an existing note without touching content.

        Raises:
            NoteNotFoundError: If the note does not exist.
            ValidationError: If ``fields`` names unknown or immutable fields.
        """
        allowed = set(NoteMetadata.model_fields) - {"id"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValidationError(
                f"Cannot update metadata fields: {', '.join(sorted(unknown))}",
                field="metadata",
            )
        with self.get_user_lock(user_id):
            if not self.exists(user_id, note_id):
                raise NoteNotFoundError(note_id, user_id=user_id)
            patch = Note(id=note_id, **fields)
            return self.write(user_id, patch, mode=WriteMode.PATCH).metadata()

    def delete(self, user_id: str, note_id: str) -> bool:
        """Remove a note's index entry, content file and media directory.

        Each removal is independent and tolerates absence; a legacy per-note
        directory for the same id is removed as well.

        Returns:
            True if anything was removed.
        """
        check_identifier(note_id, "Note ID")
        removed = False
        with self.get_user_lock(user_id):
            try:
                index = self._load_index(user_id, strict=True)
                if index.pop(note_id, None) is not None:
                    self._save_index(user_id, index)
                    removed = True
            except MalformedDocumentError as e:
                logger.error(
                    f"Cannot remove {user_id}/{note_id} from malformed index: {e}"
                )

            removed = remove_file(self.content_path(user_id, note_id)) or removed

            directories = [self.media_dir(user_id, note_id)]
            if note_id not in _RESERVED_USER_ENTRIES:
                directories.append(
                    self.legacy_reader.note_dir(self.user_dir(user_id), note_id)
                )
            for directory in directories:
                if directory.is_dir():
                    shutil.rmtree(directory, ignore_errors=True)
                    removed = True

        if removed:
            logger.info(f"Deleted note {user_id}/{note_id}")
        return removed

    # ------------------------------------------------------------------
    # Additive merging (backup import, migration)
    # ------------------------------------------------------------------

    def write_content_if_absent(self, user_id: str, note_id: str, content: str) -> bool:
        """Write a content file only when none exists for ``note_id``."""
        self.ensure(user_id)
        path = self.content_path(user_id, note_id)
        with self.get_user_lock(user_id):
            if path.exists():
                return False
            atomic_write_text(path, content)
        return True

    def merge_entries(self, user_id: str, entries: Dict[str, Any]) -> List[str]:
        """Add index entries whose ids are not indexed yet; never overwrite.

        Invalid entries are logged and skipped.

        Returns:
            Identifiers that were added.
        """
        self.ensure(user_id)
        added: List[str] = []
        with self.get_user_lock(user_id):
            index = self._load_index(user_id, strict=True)
            for note_id, entry in entries.items():
                if note_id in index:
                    continue
                try:
                    check_identifier(note_id, "Note ID")
                    metadata = self._metadata_from_entry(user_id, note_id, entry)
                except (ValidationError, MalformedDocumentError) as e:
                    logger.warning(f"Skipping invalid entry {user_id}/{note_id}: {e}")
                    continue
                index[note_id] = metadata.to_index_entry()
                added.append(note_id)
            if added:
                self._save_index(user_id, index)
        return added

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def orphan_ids(self, user_id: str) -> List[str]:
        """Content files that have no index entry."""
        notes_dir = self.notes_dir(user_id)
        if not notes_dir.is_dir():
            return []
        index = self._load_index(user_id, strict=False)
        return sorted(
            p.stem
            for p in notes_dir.glob(f"*{CONTENT_SUFFIX}")
            if p.stem not in index and not p.name.startswith(".")
        )

    def adopt_orphans(self, user_id: str) -> List[str]:
        """Index content files that have no metadata entry.

        Title comes from the first level-one heading; timestamps from the
        file's modification time.

        Returns:
            Identifiers that were adopted.
        """
        self.ensure(user_id)
        adopted: List[str] = []
        with self.get_user_lock(user_id):
            index = self._load_index(user_id, strict=True)
            for path in sorted(self.notes_dir(user_id).glob(f"*{CONTENT_SUFFIX}")):
                note_id = path.stem
                if note_id in index or path.name.startswith("."):
                    continue
                try:
                    check_identifier(note_id, "Note ID")
                    content = path.read_text(encoding="utf-8", errors="replace")
                    mtime = datetime.datetime.fromtimestamp(
                        path.stat().st_mtime, tz=datetime.timezone.utc
                    )
                except (ValidationError, OSError) as e:
                    logger.warning(f"Cannot adopt orphan {path.name}: {e}")
                    continue
                metadata = NoteMetadata(
                    id=note_id,
                    title=title_from_markdown(content),
                    created_at=mtime,
                    updated_at=mtime,
                )
                index[note_id] = metadata.to_index_entry()
                adopted.append(note_id)
            if adopted:
                self._save_index(user_id, index)
        if adopted:
            logger.info(f"Adopted {len(adopted)} orphan content file(s) for {user_id}")
        return adopted

    def repair_index(self, user_id: str) -> Tuple[Optional[Path], List[str]]:
        """Quarantine a malformed index and rebuild it from content files.

        Returns:
            (quarantine path or None when the index was healthy, adopted ids)
        """
        quarantined: Optional[Path] = None
        with self.get_user_lock(user_id):
            try:
                self._load_index(user_id, strict=True)
            except MalformedDocumentError:
                index_path = self.index_path(user_id)
                timestamp = utc_now().strftime("%Y%m%dT%H%M%S")
                quarantined = index_path.with_name(f"{INDEX_FILENAME}.corrupt-{timestamp}")
                os.replace(index_path, quarantined)
                self._save_index(user_id, {})
                logger.warning(
                    f"Quarantined malformed index for {user_id} as {quarantined.name}"
                )
            return quarantined, self.adopt_orphans(user_id)

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def save_media(
        self, user_id: str, note_id: str, original_name: str, data: bytes
    ) -> str:
        """Store an uploaded image for a note.

        Returns:
            The generated file name (``<epoch-ms>-<hex><ext>``).

        Raises:
            ValidationError: For disallowed extensions or oversized blobs.
        """
        ext = os.path.splitext(original_name or "")[1].lower()
        if ext not in ALLOWED_MEDIA_EXTENSIONS:
            raise ValidationError(
                "Only image files are allowed",
                field="filename",
                value=original_name,
                code=ErrorCode.MEDIA_REJECTED,
            )
        if len(data) > self.media_max_bytes:
            raise ValidationError(
                f"File exceeds maximum size of {self.media_max_bytes} bytes",
                field="data",
                code=ErrorCode.MEDIA_REJECTED,
            )
        self.ensure(user_id)
        filename = f"{int(time.time() * 1000)}-{secrets.token_hex(6)}{ext}"
        atomic_write_bytes(self.media_dir(user_id, note_id) / filename, data)
        logger.debug(f"Stored media {filename} for {user_id}/{note_id}")
        return filename

    def media_path(self, user_id: str, note_id: str, filename: str) -> Path:
        """Location of a stored media file (current layout, then legacy).

        Raises:
            NoteNotFoundError: If the file does not exist.
        """
        check_identifier(filename, "Filename")
        for candidate in (
            self.media_dir(user_id, note_id) / filename,
            self.legacy_reader.note_dir(self.user_dir(user_id), note_id)
            / MEDIA_DIRNAME
            / filename,
        ):
            if candidate.is_file():
                return candidate
        raise NoteNotFoundError(
            note_id, user_id=user_id, message=f"Media file '{filename}' not found"
        )

    def list_media(self, user_id: str, note_id: str) -> List[str]:
        media_dir = self.media_dir(user_id, note_id)
        if not media_dir.is_dir():
            return []
        return sorted(p.name for p in media_dir.iterdir() if p.is_file())
