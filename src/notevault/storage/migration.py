"""Explicit upward migration of legacy per-note directories.

Reads never migrate anything; this module is the only place that turns a
legacy ``<user>/<note>/`` directory into an index entry plus
``notes/<note>.md``. Every step is idempotent, so an interrupted run can
simply be repeated.
"""
import logging
import shutil
from typing import List, Optional

from notevault.exceptions import NoteNotFoundError, NotevaultError
from notevault.models.schema import MigrationReport, WriteMode
from notevault.storage.user_store import MEDIA_DIRNAME, NOTES_DIRNAME, UserStore

logger = logging.getLogger(__name__)


class LegacyMigrator:
    """Moves legacy notes into the current per-user layout."""

    def __init__(self, store: Optional[UserStore] = None):
        self.store = store or UserStore()

    def migrate_user(self, user_id: str, dry_run: bool = True) -> MigrationReport:
        """Migrate every legacy note of one user.

        Notes already present in the index are skipped and their legacy
        directory is left alone. With ``dry_run`` nothing is written; the
        report lists what would have been migrated.
        """
        store = self.store
        report = MigrationReport(user_id=user_id, dry_run=dry_run)
        user_dir = store.user_dir(user_id)
        index = store.read_index(user_id)

        for note_id in store.legacy_reader.list_legacy_ids(
            user_dir, reserved=(NOTES_DIRNAME,)
        ):
            if note_id in index:
                logger.info(f"Skipping {user_id}/{note_id}: already indexed")
                report.skipped.append(note_id)
                continue
            try:
                note = store.legacy_reader.read(user_dir, note_id, user_id=user_id)
            except NoteNotFoundError as e:
                logger.error(f"Cannot migrate {user_id}/{note_id}: {e}")
                report.failed.append(note_id)
                continue

            if dry_run:
                report.migrated.append(note_id)
                continue

            try:
                store.write(user_id, note, mode=WriteMode.REPLACE, touch=False)
                self._move_legacy_media(user_id, note_id)
                shutil.rmtree(store.legacy_reader.note_dir(user_dir, note_id))
            except (NotevaultError, OSError) as e:
                logger.error(f"Failed to migrate {user_id}/{note_id}: {e}")
                report.failed.append(note_id)
                continue
            report.migrated.append(note_id)

        logger.info(
            f"Migration {'(dry run) ' if dry_run else ''}for {user_id}: "
            f"{len(report.migrated)} migrated, {len(report.skipped)} skipped, "
            f"{len(report.failed)} failed"
        )
        return report

    def _move_legacy_media(self, user_id: str, note_id: str) -> None:
        """Move ``<note>/media/*`` to ``notes/media/<note>/`` without overwriting."""
        store = self.store
        legacy_media = (
            store.legacy_reader.note_dir(store.user_dir(user_id), note_id) / MEDIA_DIRNAME
        )
        if not legacy_media.is_dir():
            return
        target = store.media_dir(user_id, note_id)
        target.mkdir(parents=True, exist_ok=True)
        for item in legacy_media.iterdir():
            destination = target / item.name
            if destination.exists():
                logger.warning(
                    f"Media {item.name} already exists for {user_id}/{note_id}, keeping current"
                )
                continue
            shutil.move(str(item), str(destination))

    def migrate_all(self, dry_run: bool = True) -> List[MigrationReport]:
        """Migrate every user directory found on disk."""
        reports = []
        for user_id in self.store.list_user_dirs():
            if not dry_run:
                self.store.ensure(user_id)
            reports.append(self.migrate_user(user_id, dry_run=dry_run))
        return reports
