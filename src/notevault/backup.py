"""Backup and restore for Notevault.

``BackupCodec`` turns the whole installation (accounts, registered users,
every user's metadata index and note content) into one JSON document and
merges such a document back. Import is additive only: nothing that exists
locally is ever overwritten, so importing the same backup twice is the same
as importing it once.

``BackupManager`` writes export documents to a backup directory as
optionally gzipped snapshots and rotates them by count and age.

Media files and share entries are not part of a backup. An imported note
keeps its shareId only when the local share registry already maps that
token to the same note.
"""
import gzip
import json
import logging
import zlib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Union

from notevault.config import config
from notevault.exceptions import (
    ErrorCode,
    NotevaultError,
    ShareNotFoundError,
    ValidationError,
)
from notevault.models.schema import utc_now, validate_safe_path_component
from notevault.storage.account_repository import AccountRepository
from notevault.storage.documents import atomic_write_bytes
from notevault.storage.share_registry import ShareRegistry
from notevault.storage.system_registry import SystemRegistry
from notevault.storage.user_store import UserStore

logger = logging.getLogger(__name__)

BACKUP_VERSION = 1
SNAPSHOT_PREFIX = "notevault_"


@dataclass
class ImportResult:
    """Counts of what an import added."""

    accounts_imported: int = 0
    users_imported: int = 0
    notes_imported: int = 0
    content_written: int = 0
    skipped_users: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _invalid(message: str) -> ValidationError:
    return ValidationError(message, field="backup", code=ErrorCode.BACKUP_INVALID)


def validate_backup_document(document: Any) -> None:
    """Check the shape of a backup document before anything is merged.

    Raises:
        ValidationError: Unknown version or wrong structure.
    """
    if not isinstance(document, dict):
        raise _invalid("Backup must be a JSON object")
    if document.get("version") != BACKUP_VERSION:
        raise _invalid(f"Unsupported backup version: {document.get('version')!r}")
    if not isinstance(document.get("accounts", {}), dict):
        raise _invalid("'accounts' must be an object")
    users_index = document.get("usersIndex", [])
    if not isinstance(users_index, list) or not all(
        isinstance(u, str) for u in users_index
    ):
        raise _invalid("'usersIndex' must be a list of user names")
    user_data = document.get("userData", {})
    if not isinstance(user_data, dict):
        raise _invalid("'userData' must be an object")
    for user_id, data in user_data.items():
        if not isinstance(data, dict):
            raise _invalid(f"userData for {user_id!r} must be an object")
        database = data.get("database", {})
        if not isinstance(database, dict) or not isinstance(
            database.get("notes", {}), dict
        ):
            raise _invalid(f"database of {user_id!r} must hold a 'notes' object")
        notes = data.get("notes", {})
        if not isinstance(notes, dict) or not all(
            isinstance(c, str) for c in notes.values()
        ):
            raise _invalid(f"notes of {user_id!r} must map ids to markdown")


class BackupCodec:
    """Exports and additively imports the whole installation."""

    def __init__(
        self,
        store: Optional[UserStore] = None,
        accounts: Optional[AccountRepository] = None,
        registry: Optional[SystemRegistry] = None,
        shares: Optional[ShareRegistry] = None,
    ):
        self.store = store or UserStore()
        self.accounts = accounts or AccountRepository()
        self.registry = registry or self.store.registry
        self.shares = shares or ShareRegistry()

    def _known_users(self) -> List[str]:
        users = list(self.registry.list_all())
        for user_id in self.store.list_user_dirs():
            if user_id not in users:
                users.append(user_id)
        return users

    def _export_user(self, user_id: str) -> Dict[str, Any]:
        entries: Dict[str, Any] = {}
        contents: Dict[str, str] = {}
        for note_id, entry in self.store.read_index(user_id).items():
            try:
                content = self.store.read_content(user_id, note_id)
            except NotevaultError as e:
                logger.warning(f"Skipping {user_id}/{note_id} in export: {e}")
                continue
            entries[note_id] = entry
            contents[note_id] = content or ""
        # Legacy-only notes are exported in the current shape
        for note_id in self.store.legacy_ids(user_id):
            try:
                note = self.store.read(user_id, note_id)
            except NotevaultError as e:
                logger.warning(f"Skipping legacy note {user_id}/{note_id} in export: {e}")
                continue
            entries[note_id] = note.to_index_entry()
            contents[note_id] = note.content
        return {"database": {"notes": entries}, "notes": contents}

    def export_all(self) -> Dict[str, Any]:
        """Build the backup document for every known user."""
        users = self._known_users()
        user_data = {}
        for user_id in users:
            try:
                user_data[user_id] = self._export_user(user_id)
            except NotevaultError as e:
                logger.error(f"Skipping user {user_id} in export: {e}")
        note_count = sum(len(d["notes"]) for d in user_data.values())
        logger.info(f"Exported {len(user_data)} user(s), {note_count} note(s)")
        return {
            "version": BACKUP_VERSION,
            "exportedAt": utc_now().isoformat(),
            "accounts": self.accounts.raw(),
            "usersIndex": users,
            "userData": user_data,
        }

    def import_backup(self, document: Any) -> ImportResult:
        """Merge a backup document into this installation.

        Accounts, users, index entries and content files are only added when
        absent locally. Each user is merged independently; a failure for one
        user is recorded in ``errors`` and the rest continue.

        Raises:
            ValidationError: The document is not a valid backup (raised before
                anything is written).
        """
        validate_backup_document(document)
        result = ImportResult()

        result.accounts_imported = len(self.accounts.merge(document.get("accounts", {})))

        user_data: Dict[str, Any] = document.get("userData", {})
        user_ids = list(document.get("usersIndex", []))
        user_ids += [u for u in user_data if u not in user_ids]

        for user_id in user_ids:
            try:
                validate_safe_path_component(user_id, "User ID")
                known = self.registry.contains(user_id)
                self.store.ensure(user_id)
            except (ValueError, NotevaultError) as e:
                logger.warning(f"Skipping user {user_id!r} from backup: {e}")
                result.skipped_users.append(user_id)
                continue
            if not known:
                result.users_imported += 1

            data = user_data.get(user_id)
            if not data:
                continue
            try:
                self._import_user(user_id, data, result)
            except NotevaultError as e:
                logger.error(f"Import for user {user_id} failed: {e}")
                result.errors.append(f"{user_id}: {e.message}")

        logger.info(
            f"Imported {result.accounts_imported} account(s), "
            f"{result.users_imported} user(s), {result.notes_imported} note(s)"
        )
        return result

    def _import_user(self, user_id: str, data: Dict[str, Any], result: ImportResult) -> None:
        entries: Dict[str, Any] = data.get("database", {}).get("notes", {})
        contents: Dict[str, str] = data.get("notes", {})
        local = self.store.read_index(user_id)

        # Content before index so new entries never point at missing content
        for note_id in entries:
            if note_id in local or note_id not in contents:
                continue
            try:
                if self.store.write_content_if_absent(user_id, note_id, contents[note_id]):
                    result.content_written += 1
            except ValidationError as e:
                logger.warning(f"Skipping content for {user_id}/{note_id!r}: {e}")

        incoming = {
            note_id: self._without_dead_share(user_id, note_id, entry)
            for note_id, entry in entries.items()
            if note_id not in local
        }
        result.notes_imported += len(self.store.merge_entries(user_id, incoming))

    def _without_dead_share(self, user_id: str, note_id: str, entry: Any) -> Any:
        """Drop a shareId the local share registry does not map to this note."""
        if not isinstance(entry, dict) or not entry.get("shareId"):
            return entry
        token = str(entry["shareId"])
        try:
            if self.shares.resolve(token) == (user_id, note_id):
                return entry
        except ShareNotFoundError:
            pass
        logger.info(f"Dropping share link of imported note {user_id}/{note_id}")
        return {k: v for k, v in entry.items() if k != "shareId"}


class BackupManager:
    """Writes export snapshots to disk with rotation.

    Snapshots are named ``notevault_<UTC timestamp>[_label].json[.gz]``.
    """

    def __init__(
        self,
        codec: Optional[BackupCodec] = None,
        backup_dir: Optional[Union[str, Path]] = None,
        max_backups: Optional[int] = None,
        max_age_days: Optional[int] = None,
    ):
        """Initialize the backup manager.

        Args:
            codec: Export/import codec. Created with defaults if None.
            backup_dir: Directory for snapshots. Defaults to config.backup_dir.
            max_backups: Maximum number of snapshots to keep
            max_age_days: Delete snapshots older than this many days
        """
        self.codec = codec or BackupCodec()
        self.backup_dir = Path(backup_dir) if backup_dir else config.get_backup_dir()
        self.max_backups = max_backups or config.max_backups
        self.max_age_days = max_age_days or config.max_backup_age_days
        self._lock = Lock()

    def write_snapshot(self, label: Optional[str] = None, compress: bool = True) -> Path:
        """Export the installation to a new snapshot file.

        Returns:
            Path to the snapshot.
        """
        if label:
            try:
                validate_safe_path_component(label, "Label")
            except ValueError as e:
                raise ValidationError(str(e), field="label", value=label) from e
        document = self.codec.export_all()
        data = json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")

        with self._lock:
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
            label_part = f"_{label}" if label else ""
            ext = ".json.gz" if compress else ".json"
            snapshot_path = self.backup_dir / f"{SNAPSHOT_PREFIX}{timestamp}{label_part}{ext}"
            if compress:
                data = gzip.compress(data, compresslevel=6)
            atomic_write_bytes(snapshot_path, data)

            size_mb = snapshot_path.stat().st_size / (1024 * 1024)
            logger.info(f"Backup snapshot created: {snapshot_path.name} ({size_mb:.2f} MB)")
            self._rotate_snapshots(keep=snapshot_path)

        return snapshot_path

    def _snapshot_files(self) -> List[Path]:
        """Snapshots sorted by modification time, newest first."""
        if not self.backup_dir.is_dir():
            return []
        return sorted(
            self.backup_dir.glob(f"{SNAPSHOT_PREFIX}*.json*"),
            key=lambda p: (p.stat().st_mtime, p.name),
            reverse=True,
        )

    def _rotate_snapshots(self, keep: Optional[Path] = None) -> int:
        """Remove old snapshots based on count and age limits.

        Returns:
            Number of snapshots removed.
        """
        removed = 0
        now = datetime.now(timezone.utc).timestamp()
        max_age_seconds = self.max_age_days * 24 * 60 * 60

        for position, snapshot in enumerate(self._snapshot_files()):
            if snapshot == keep:
                continue
            try:
                too_many = position >= self.max_backups
                too_old = now - snapshot.stat().st_mtime > max_age_seconds
                if too_many or too_old:
                    snapshot.unlink()
                    removed += 1
                    logger.debug(f"Removed old snapshot: {snapshot.name}")
            except OSError as e:
                logger.warning(f"Could not remove snapshot {snapshot.name}: {e}")

        if removed > 0:
            logger.info(f"Rotated {removed} old snapshot(s)")
        return removed

    def list_snapshots(self) -> List[Dict[str, Any]]:
        """Snapshot metadata, newest first."""
        snapshots = []
        for path in self._snapshot_files():
            stat = path.stat()
            snapshots.append({
                "path": str(path),
                "name": path.name,
                "compressed": path.suffix == ".gz",
                "size_bytes": stat.st_size,
                "created_at": datetime.fromtimestamp(
                    stat.st_mtime, tz=timezone.utc
                ).isoformat(),
            })
        return snapshots

    def read_snapshot(self, snapshot_path: Union[str, Path]) -> Dict[str, Any]:
        """Load a snapshot's export document.

        Raises:
            ValidationError: The file is missing or not a readable backup.
        """
        snapshot_path = Path(snapshot_path)
        try:
            raw = snapshot_path.read_bytes()
            if snapshot_path.suffix == ".gz":
                raw = gzip.decompress(raw)
            document = json.loads(raw.decode("utf-8"))
        except (OSError, EOFError, zlib.error, UnicodeDecodeError, ValueError) as e:
            raise ValidationError(
                f"Cannot read snapshot {snapshot_path.name}: {e}",
                field="backup",
                code=ErrorCode.BACKUP_INVALID,
            ) from e
        validate_backup_document(document)
        return document

    def restore_snapshot(self, snapshot_path: Union[str, Path]) -> ImportResult:
        """Additively import a snapshot."""
        result = self.codec.import_backup(self.read_snapshot(snapshot_path))
        logger.info(f"Restored snapshot {Path(snapshot_path).name}")
        return result
