"""Reader for the deprecated per-note directory layouts.

Before the per-user index existed, every note lived in its own directory
directly under the user's directory:

- generation 2 ("split"): ``<user>/<note>/metadata.json`` + ``content.md``
- generation 1 ("combined"): ``<user>/<note>/note.json`` with the markdown
  inline under the ``markdown`` key

Each generation is a ``LegacyReaderStrategy``: it names the files it needs
and turns their raw bytes into a normalized ``Note`` without touching the
filesystem itself. ``LegacyFormatReader`` loads the bytes and tries the
strategies in order. Nothing here ever writes; migration is a separate,
explicit step (see ``notevault.storage.migration``).
"""
import datetime
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from notevault.exceptions import MalformedDocumentError, NoteNotFoundError
from notevault.models.schema import Note, NoteMetadata

logger = logging.getLogger(__name__)

Blobs = Dict[str, Optional[bytes]]


def _decode_json_object(name: str, raw: bytes) -> Dict[str, Any]:
    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedDocumentError(name, original_error=e) from e
    if not isinstance(document, dict):
        raise MalformedDocumentError(name)
    return document


def _build_note(
    name: str,
    note_id: str,
    metadata: Dict[str, Any],
    content: str,
    stored_at: Optional[datetime.datetime] = None,
) -> Note:
    has_created = metadata.get("createdAt", metadata.get("created_at")) is not None
    if stored_at is not None and not has_created:
        # The file time stands in so repeated reads agree; updatedAt follows it
        metadata = {**metadata, "createdAt": stored_at.isoformat()}
    try:
        return Note.from_parts(NoteMetadata.from_index_entry(note_id, metadata), content)
    except PydanticValidationError as e:
        raise MalformedDocumentError(name, note_id=note_id, original_error=e) from e


class LegacyReaderStrategy:
    """One historical on-disk shape.

    Attributes:
        name: Short label used in logs.
        required: File that must exist for this shape to apply.
        optional: Files loaded when present.
    """

    name: str = ""
    required: str = ""
    optional: Tuple[str, ...] = ()

    @property
    def files(self) -> Tuple[str, ...]:
        return (self.required,) + self.optional

    def parse(
        self,
        note_id: str,
        blobs: Blobs,
        stored_at: Optional[datetime.datetime] = None,
    ) -> Optional[Note]:
        """Turn raw file contents into a Note.

        ``stored_at`` stands in for timestamps the document does not carry.

        Returns:
            None when the required file is absent.

        Raises:
            MalformedDocumentError: When the required file cannot be parsed.
        """
        raise NotImplementedError


class SplitDocumentStrategy(LegacyReaderStrategy):
    """``metadata.json`` plus a separate ``content.md``."""

    name = "split"
    required = "metadata.json"
    optional = ("content.md",)

    def parse(
        self,
        note_id: str,
        blobs: Blobs,
        stored_at: Optional[datetime.datetime] = None,
    ) -> Optional[Note]:
        raw_meta = blobs.get(self.required)
        if raw_meta is None:
            return None
        metadata = _decode_json_object(self.required, raw_meta)
        raw_content = blobs.get("content.md")
        # A missing content file is tolerated and reads as empty
        content = raw_content.decode("utf-8", errors="replace") if raw_content else ""
        return _build_note(self.required, note_id, metadata, content, stored_at)


class CombinedDocumentStrategy(LegacyReaderStrategy):
    """A single ``note.json`` with the markdown stored inline."""

    name = "combined"
    required = "note.json"

    def parse(
        self,
        note_id: str,
        blobs: Blobs,
        stored_at: Optional[datetime.datetime] = None,
    ) -> Optional[Note]:
        raw = blobs.get(self.required)
        if raw is None:
            return None
        document = _decode_json_object(self.required, raw)
        content = document.pop("markdown", "") or ""
        return _build_note(self.required, note_id, document, str(content), stored_at)


DEFAULT_STRATEGIES: Tuple[LegacyReaderStrategy, ...] = (
    SplitDocumentStrategy(),
    CombinedDocumentStrategy(),
)


class LegacyFormatReader:
    """Reads notes stored in any deprecated per-note directory layout."""

    def __init__(self, strategies: Sequence[LegacyReaderStrategy] = DEFAULT_STRATEGIES):
        self.strategies = list(strategies)

    @staticmethod
    def note_dir(user_dir: Path, note_id: str) -> Path:
        """Legacy per-note directory for ``note_id``."""
        return user_dir / note_id

    @staticmethod
    def _load_blobs(note_dir: Path, names: Sequence[str]) -> Blobs:
        blobs: Blobs = {}
        for name in names:
            try:
                blobs[name] = (note_dir / name).read_bytes()
            except (FileNotFoundError, NotADirectoryError):
                blobs[name] = None
        return blobs

    @staticmethod
    def _modified_time(path: Path) -> Optional[datetime.datetime]:
        try:
            mtime = path.stat().st_mtime
        except OSError:
            return None
        return datetime.datetime.fromtimestamp(mtime, tz=datetime.timezone.utc)

    def has_legacy_note(self, user_dir: Path, note_id: str) -> bool:
        """Whether any legacy shape's required file exists for ``note_id``."""
        note_dir = self.note_dir(user_dir, note_id)
        return any((note_dir / s.required).is_file() for s in self.strategies)

    def read(self, user_dir: Path, note_id: str, user_id: Optional[str] = None) -> Note:
        """Read ``note_id`` from the first legacy shape that has it.

        A shape whose document is malformed is logged and skipped so an older
        intact shape can still be used.

        Raises:
            MalformedDocumentError: If shapes exist but none could be parsed.
            NoteNotFoundError: If no legacy shape exists at all.
        """
        note_dir = self.note_dir(user_dir, note_id)
        if not note_dir.is_dir():
            raise NoteNotFoundError(note_id, user_id=user_id)

        malformed: Optional[MalformedDocumentError] = None
        for strategy in self.strategies:
            blobs = self._load_blobs(note_dir, strategy.files)
            try:
                note = strategy.parse(
                    note_id, blobs, self._modified_time(note_dir / strategy.required)
                )
            except MalformedDocumentError as e:
                logger.warning(
                    f"Skipping malformed {strategy.name} legacy document for "
                    f"note {note_id}: {e}"
                )
                malformed = e
                continue
            if note is not None:
                logger.debug(f"Read note {note_id} from legacy {strategy.name} layout")
                return note

        if malformed is not None:
            raise MalformedDocumentError(
                malformed.document,
                note_id=note_id,
                user_id=user_id,
                original_error=malformed.original_error,
            )
        raise NoteNotFoundError(note_id, user_id=user_id)

    def list_legacy_ids(self, user_dir: Path, reserved: Sequence[str] = ()) -> List[str]:
        """Identifiers of per-note legacy directories under ``user_dir``."""
        if not user_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in user_dir.iterdir()
            if entry.is_dir()
            and entry.name not in reserved
            and self.has_legacy_note(user_dir, entry.name)
        )
