"""Tests for per-user note storage."""
import datetime
import json
import threading

import pytest

from notevault.exceptions import (
    ErrorCode,
    MalformedDocumentError,
    NoteNotFoundError,
    ValidationError,
)
from notevault.models.schema import Note, WriteMode
from notevault.storage.user_store import UserStore, title_from_markdown


def ts(day, hour=12):
    return datetime.datetime(2024, 1, day, hour, 0, tzinfo=datetime.timezone.utc)


def write_split_note(store, user_id, note_id, metadata, content=""):
    note_dir = store.user_dir(user_id) / note_id
    note_dir.mkdir(parents=True, exist_ok=True)
    (note_dir / "metadata.json").write_text(json.dumps(metadata), encoding="utf-8")
    (note_dir / "content.md").write_text(content, encoding="utf-8")
    return note_dir


class TestLayout:
    """Tests for directories, identifiers and lazy creation."""

    def test_ensure_creates_empty_index_and_registers(self, user_store):
        user_store.ensure("alice")
        index = json.loads(user_store.index_path("alice").read_text())
        assert index == {"notes": {}}
        assert user_store.notes_dir("alice").is_dir()
        assert user_store.registry.contains("alice")

    def test_ensure_is_idempotent(self, user_store):
        user_store.write("alice", Note(id="n1", content="x"))
        user_store.ensure("alice")
        assert "n1" in user_store.read_index("alice")

    def test_unknown_user_lists_empty_without_creating(self, user_store):
        assert user_store.list_notes("ghost") == []
        assert not user_store.user_dir("ghost").exists()

    @pytest.mark.parametrize("user_id", ["../etc", "a/b", "", "_system"])
    def test_unsafe_users_rejected(self, user_store, user_id):
        with pytest.raises(ValidationError):
            user_store.user_dir(user_id)

    def test_unsafe_note_id_rejected(self, user_store):
        with pytest.raises(ValidationError) as exc_info:
            user_store.read("alice", "../../users")
        assert exc_info.value.code == ErrorCode.PATH_TRAVERSAL_DETECTED

    def test_list_user_dirs_skips_system(self, user_store):
        user_store.ensure("bob")
        user_store.ensure("alice")
        assert user_store.list_user_dirs() == ["alice", "bob"]
        assert user_store.data_dir.joinpath("_system").is_dir()

    def test_title_from_markdown(self):
        assert title_from_markdown("intro\n# Heading ##\nbody") == "Heading"
        assert title_from_markdown("## Sub only") is None


class TestReadWrite:
    """Tests for the basic CRUD contract."""

    def test_write_then_read(self, user_store):
        stored = user_store.write(
            "alice", Note(id="n1", title="Groceries", tags=["home"], content="- milk")
        )
        note = user_store.read("alice", "n1")
        assert note.title == "Groceries"
        assert note.tags == ["home"]
        assert note.content == "- milk"
        assert note.updated_at == stored.updated_at

    def test_content_lives_outside_the_index(self, user_store):
        user_store.write("alice", Note(id="n1", content="body text"))
        raw = user_store.index_path("alice").read_text()
        assert "body text" not in raw
        assert user_store.content_path("alice", "n1").read_text() == "body text"

    def test_missing_note_not_found(self, user_store):
        with pytest.raises(NoteNotFoundError):
            user_store.read("alice", "nope")

    def test_indexed_note_without_content_reads_empty(self, user_store):
        user_store.write("alice", Note(id="n1", title="T", content="x"))
        user_store.content_path("alice", "n1").unlink()
        note = user_store.read("alice", "n1")
        assert note.title == "T"
        assert note.content == ""

    def test_touch_refreshes_updated_at(self, user_store):
        note = Note(id="n1", created_at=ts(1), updated_at=ts(1))
        stored = user_store.write("alice", note)
        assert stored.created_at == ts(1)
        assert stored.updated_at > ts(1)

    def test_touch_false_preserves_timestamps(self, user_store):
        stored = user_store.write(
            "alice", Note(id="n1", created_at=ts(1), updated_at=ts(2)), touch=False
        )
        assert stored.updated_at == ts(2)
        assert user_store.read("alice", "n1").updated_at == ts(2)

    def test_list_is_most_recent_first(self, user_store):
        for note_id, day in [("old", 1), ("new", 3), ("mid", 2)]:
            user_store.write(
                "alice",
                Note(id=note_id, created_at=ts(1), updated_at=ts(day)),
                touch=False,
            )
        assert [m.id for m in user_store.list_notes("alice")] == ["new", "mid", "old"]

    def test_list_skips_invalid_entries(self, user_store):
        user_store.write("alice", Note(id="good", content="x"))
        index = json.loads(user_store.index_path("alice").read_text())
        index["notes"]["bad"] = "not an object"
        user_store.index_path("alice").write_text(json.dumps(index))
        assert [m.id for m in user_store.list_notes("alice")] == ["good"]

    def test_invalid_entry_read_is_logged(self, user_store, caplog):
        user_store.write("alice", Note(id="good", content="x"))
        index = json.loads(user_store.index_path("alice").read_text())
        index["notes"]["bad"] = "not an object"
        user_store.index_path("alice").write_text(json.dumps(index))

        with caplog.at_level("WARNING", logger="notevault.storage.user_store"):
            with pytest.raises(MalformedDocumentError):
                user_store.read("alice", "bad")
            with pytest.raises(MalformedDocumentError):
                user_store.read_metadata("alice", "bad")

        unreadable = [
            r for r in caplog.records if "Unreadable index entry alice/bad" in r.getMessage()
        ]
        assert len(unreadable) == 2

    def test_iter_notes_yields_content(self, user_store):
        user_store.write("alice", Note(id="n1", content="one"))
        assert [n.content for n in user_store.iter_notes("alice")] == ["one"]


class TestWriteModes:
    """REPLACE overwrites metadata wholesale; PATCH merges set fields."""

    @pytest.fixture
    def shared_note(self, user_store):
        return user_store.write(
            "alice",
            Note(
                id="n1",
                title="Original",
                content="body",
                share_id="tok",
                is_password_protected=True,
                password_hash="fake$hash",
                created_at=ts(1),
            ),
        )

    def test_patch_keeps_unset_fields(self, user_store, shared_note):
        user_store.write("alice", Note(id="n1", title="Renamed"), mode=WriteMode.PATCH)
        note = user_store.read("alice", "n1")
        assert note.title == "Renamed"
        assert note.content == "body"
        assert note.share_id == "tok"
        assert note.password_hash == "fake$hash"
        assert note.created_at == ts(1)

    def test_replace_drops_unset_fields(self, user_store, shared_note):
        user_store.write("alice", Note(id="n1", title="Replaced"))
        note = user_store.read("alice", "n1")
        assert note.share_id is None
        assert note.is_password_protected is False
        assert note.content == ""

    def test_patch_of_legacy_note_merges_legacy_fields(self, user_store):
        write_split_note(
            user_store, "alice", "old", {"title": "Legacy", "tags": ["t"]}, "legacy body"
        )
        user_store.write("alice", Note(id="old", title="Now indexed"), mode=WriteMode.PATCH)
        note = user_store.read("alice", "old")
        assert note.title == "Now indexed"
        assert note.tags == ["t"]
        assert note.content == "legacy body"

    def test_update_metadata(self, user_store, shared_note):
        meta = user_store.update_metadata("alice", "n1", share_id=None)
        assert meta.share_id is None
        assert user_store.read("alice", "n1").content == "body"

    def test_update_metadata_rejects_unknown_fields(self, user_store, shared_note):
        with pytest.raises(ValidationError):
            user_store.update_metadata("alice", "n1", colour="red")
        with pytest.raises(ValidationError):
            user_store.update_metadata("alice", "n1", id="other")

    def test_update_metadata_of_missing_note(self, user_store):
        with pytest.raises(NoteNotFoundError):
            user_store.update_metadata("alice", "missing", title="x")


class TestDelete:
    def test_delete_removes_everything(self, user_store):
        user_store.write("alice", Note(id="n1", content="x"))
        user_store.save_media("alice", "n1", "pic.png", b"png")
        assert user_store.delete("alice", "n1") is True
        assert not user_store.exists("alice", "n1")
        assert not user_store.content_path("alice", "n1").exists()
        assert not user_store.media_dir("alice", "n1").exists()

    def test_delete_is_idempotent(self, user_store):
        user_store.write("alice", Note(id="n1"))
        user_store.delete("alice", "n1")
        assert user_store.delete("alice", "n1") is False

    def test_delete_removes_legacy_directory(self, user_store):
        note_dir = write_split_note(user_store, "alice", "old", {"title": "L"})
        assert user_store.delete("alice", "old") is True
        assert not note_dir.exists()

    def test_delete_never_removes_notes_directory(self, user_store):
        user_store.write("alice", Note(id="n1", content="x"))
        user_store.delete("alice", "notes")
        assert user_store.read("alice", "n1").content == "x"

    def test_delete_with_malformed_index_still_removes_content(self, user_store):
        user_store.write("alice", Note(id="n1", content="x"))
        user_store.index_path("alice").write_text("{oops")
        assert user_store.delete("alice", "n1") is True
        assert not user_store.content_path("alice", "n1").exists()


class TestLegacyFallback:
    """Reads fall through to legacy layouts; the index shadows them."""

    def test_legacy_note_readable_and_listed(self, user_store):
        user_store.ensure("alice")
        write_split_note(user_store, "alice", "old", {"title": "Legacy"}, "hi")
        assert user_store.read("alice", "old").content == "hi"
        assert user_store.exists("alice", "old")
        assert [m.id for m in user_store.list_notes("alice")] == ["old"]
        assert user_store.list_notes("alice", include_legacy=False) == []

    def test_index_shadows_legacy(self, user_store):
        write_split_note(user_store, "alice", "n1", {"title": "Legacy"}, "old")
        user_store.write("alice", Note(id="n1", title="Current", content="new"))
        assert user_store.read("alice", "n1").title == "Current"
        assert user_store.legacy_ids("alice") == []
        assert len(user_store.list_notes("alice")) == 1

    def test_reading_legacy_never_writes(self, user_store):
        write_split_note(user_store, "alice", "old", {"title": "Legacy"})
        user_store.read("alice", "old")
        assert not user_store.index_path("alice").exists()


class TestCorruption:
    """A malformed index reads as empty but is never overwritten."""

    @pytest.fixture
    def corrupted(self, user_store):
        user_store.write("alice", Note(id="n1", title="Kept", content="# Kept\nbody"))
        user_store.index_path("alice").write_text("{not json")
        return user_store

    def test_reads_as_empty(self, corrupted):
        assert corrupted.list_notes("alice") == []
        with pytest.raises(NoteNotFoundError):
            corrupted.read("alice", "n1")

    def test_writes_refuse(self, corrupted):
        with pytest.raises(MalformedDocumentError):
            corrupted.write("alice", Note(id="n2"))
        assert corrupted.index_path("alice").read_text() == "{not json"

    def test_orphans_detected(self, corrupted):
        assert corrupted.orphan_ids("alice") == ["n1"]

    def test_repair_quarantines_and_adopts(self, corrupted):
        quarantined, adopted = corrupted.repair_index("alice")
        assert quarantined is not None
        assert quarantined.name.startswith("database.json.corrupt-")
        assert quarantined.read_text() == "{not json"
        assert adopted == ["n1"]
        note = corrupted.read("alice", "n1")
        assert note.title == "Kept"
        assert note.content == "# Kept\nbody"

    def test_repair_of_healthy_index_only_adopts(self, user_store):
        user_store.write("alice", Note(id="n1"))
        user_store.content_path("alice", "stray").write_text("no heading")
        quarantined, adopted = user_store.repair_index("alice")
        assert quarantined is None
        assert adopted == ["stray"]
        assert user_store.read("alice", "stray").title == "Untitled"


class TestMerging:
    """Additive merges used by backup import and migration."""

    def test_merge_entries_never_overwrites(self, user_store):
        user_store.write("alice", Note(id="n1", title="Local"))
        added = user_store.merge_entries(
            "alice",
            {
                "n1": {"title": "Remote"},
                "n2": {"title": "New", "createdAt": "2024-01-01T00:00:00Z"},
                "../x": {"title": "Bad"},
                "n3": "not an object",
            },
        )
        assert added == ["n2"]
        assert user_store.read("alice", "n1").title == "Local"
        assert user_store.read("alice", "n2").updated_at == ts(1, 0)

    def test_write_content_if_absent(self, user_store):
        assert user_store.write_content_if_absent("alice", "n1", "first") is True
        assert user_store.write_content_if_absent("alice", "n1", "second") is False
        assert user_store.read_content("alice", "n1") == "first"


class TestMedia:
    def test_save_and_locate(self, user_store):
        name = user_store.save_media("alice", "n1", "Photo.PNG", b"\x89PNG")
        assert name.endswith(".png")
        assert user_store.media_path("alice", "n1", name).read_bytes() == b"\x89PNG"
        assert user_store.list_media("alice", "n1") == [name]

    def test_rejects_non_images(self, user_store):
        with pytest.raises(ValidationError) as exc_info:
            user_store.save_media("alice", "n1", "script.exe", b"MZ")
        assert exc_info.value.code == ErrorCode.MEDIA_REJECTED

    def test_rejects_oversized(self, test_config):
        store = UserStore(media_max_bytes=4)
        with pytest.raises(ValidationError):
            store.save_media("alice", "n1", "big.png", b"12345")

    def test_legacy_media_location(self, user_store):
        note_dir = write_split_note(user_store, "alice", "old", {"title": "L"})
        (note_dir / "media").mkdir()
        (note_dir / "media" / "a.png").write_bytes(b"x")
        assert user_store.media_path("alice", "old", "a.png").read_bytes() == b"x"

    def test_missing_media_not_found(self, user_store):
        with pytest.raises(NoteNotFoundError):
            user_store.media_path("alice", "n1", "none.png")


class TestConcurrency:
    """Concurrent callers on one user's index never lose entries or see torn notes."""

    def test_parallel_creates_are_all_indexed(self, user_store):
        errors = []

        def writer(offset):
            try:
                for i in range(10):
                    user_store.write("alice", Note(id=f"n{offset}-{i}", content="x"))
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(t,)) for t in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(user_store.read_index("alice")) == 50

    def test_parallel_patches_keep_all_fields(self, user_store):
        user_store.write("alice", Note(id="n1", content="body"))

        def patch(field, value):
            user_store.update_metadata("alice", "n1", **{field: value})

        threads = [
            threading.Thread(target=patch, args=("title", "T")),
            threading.Thread(target=patch, args=("tags", ["a"])),
            threading.Thread(target=patch, args=("groups", ["g"])),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        note = user_store.read("alice", "n1")
        assert (note.title, note.tags, note.groups) == ("T", ["a"], ["g"])

    def test_reader_never_sees_metadata_ahead_of_content(self, user_store):
        user_store.write("alice", Note(id="n1", title="v0", content="v0"))
        done = threading.Event()
        errors = []
        mismatches = []
        reads = []

        def writer():
            try:
                for i in range(1, 200):
                    user_store.write("alice", Note(id="n1", title=f"v{i}", content=f"v{i}"))
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)
            finally:
                done.set()

        def reader():
            try:
                while not done.is_set():
                    note = user_store.read("alice", "n1")
                    reads.append(note.title)
                    if int(note.title[1:]) > int(note.content[1:]):
                        mismatches.append((note.title, note.content))
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)

        threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert mismatches == []
        assert reads
        final = user_store.read("alice", "n1")
        assert (final.title, final.content) == ("v199", "v199")
