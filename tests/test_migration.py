"""Tests for explicit legacy migration."""
import json

import pytest

from notevault.models.schema import Note
from notevault.storage.migration import LegacyMigrator


def write_split_note(store, user_id, note_id, metadata, content=""):
    note_dir = store.user_dir(user_id) / note_id
    note_dir.mkdir(parents=True, exist_ok=True)
    (note_dir / "metadata.json").write_text(json.dumps(metadata), encoding="utf-8")
    (note_dir / "content.md").write_text(content, encoding="utf-8")
    return note_dir


def write_combined_note(store, user_id, note_id, document):
    note_dir = store.user_dir(user_id) / note_id
    note_dir.mkdir(parents=True, exist_ok=True)
    (note_dir / "note.json").write_text(json.dumps(document), encoding="utf-8")
    return note_dir


@pytest.fixture
def migrator(user_store):
    return LegacyMigrator(store=user_store)


@pytest.fixture
def legacy_user(user_store):
    user_store.ensure("alice")
    write_split_note(
        user_store,
        "alice",
        "split1",
        {
            "title": "Split",
            "tags": ["a"],
            "createdAt": "2023-01-01T00:00:00Z",
            "updatedAt": "2023-02-01T00:00:00Z",
        },
        "split body",
    )
    write_combined_note(
        user_store, "alice", "comb1", {"title": "Combined", "markdown": "inline body"}
    )
    return user_store


class TestMigrateUser:
    def test_dry_run_changes_nothing(self, migrator, legacy_user):
        report = migrator.migrate_user("alice")
        assert report.dry_run is True
        assert sorted(report.migrated) == ["comb1", "split1"]
        assert legacy_user.read_index("alice") == {}
        assert (legacy_user.user_dir("alice") / "split1").is_dir()

    def test_apply_moves_notes_into_index(self, migrator, legacy_user):
        report = migrator.migrate_user("alice", dry_run=False)
        assert sorted(report.migrated) == ["comb1", "split1"]
        assert report.failed == []

        note = legacy_user.read("alice", "split1")
        assert note.title == "Split"
        assert note.content == "split body"
        # Timestamps survive migration
        assert note.updated_at.year == 2023 and note.updated_at.month == 2
        assert legacy_user.read("alice", "comb1").content == "inline body"
        assert not (legacy_user.user_dir("alice") / "split1").exists()
        assert legacy_user.legacy_ids("alice") == []

    def test_is_idempotent(self, migrator, legacy_user):
        migrator.migrate_user("alice", dry_run=False)
        report = migrator.migrate_user("alice", dry_run=False)
        assert report.migrated == []
        assert len(legacy_user.read_index("alice")) == 2

    def test_indexed_notes_are_skipped(self, migrator, user_store):
        user_store.write("alice", Note(id="dup", title="Current", content="new"))
        write_split_note(user_store, "alice", "dup", {"title": "Stale"}, "old")
        report = migrator.migrate_user("alice", dry_run=False)
        assert report.skipped == ["dup"]
        assert user_store.read("alice", "dup").title == "Current"
        # The shadowed legacy directory is left for the operator
        assert (user_store.user_dir("alice") / "dup").is_dir()

    def test_malformed_notes_reported_as_failed(self, migrator, user_store):
        note_dir = user_store.user_dir("alice") / "broken"
        note_dir.mkdir(parents=True)
        (note_dir / "metadata.json").write_text("{nope")
        report = migrator.migrate_user("alice", dry_run=False)
        assert report.failed == ["broken"]
        assert note_dir.is_dir()

    def test_media_moves_to_current_layout(self, migrator, user_store):
        note_dir = write_split_note(user_store, "alice", "pic", {"title": "P"})
        (note_dir / "media").mkdir()
        (note_dir / "media" / "1-abc.png").write_bytes(b"img")
        migrator.migrate_user("alice", dry_run=False)
        assert user_store.list_media("alice", "pic") == ["1-abc.png"]
        assert user_store.media_path("alice", "pic", "1-abc.png").read_bytes() == b"img"


class TestMigrateAll:
    def test_covers_every_user_directory(self, migrator, user_store):
        write_split_note(user_store, "alice", "a1", {"title": "A"})
        write_split_note(user_store, "bob", "b1", {"title": "B"})
        reports = migrator.migrate_all(dry_run=False)
        assert [r.user_id for r in reports] == ["alice", "bob"]
        assert user_store.registry.list_all() == ["alice", "bob"]
        assert user_store.read("bob", "b1").title == "B"
