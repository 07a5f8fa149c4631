"""Tests for sync state persistence."""

import json

import pytest

from pygrive.exceptions import LocalIOError
from pygrive.sync.scanner import EntryKind, TreeEntry
from pygrive.sync.state import StateEntry, StateStore
from pygrive.utils import STATE_FILE_NAME


class TestStateEntry:
    """Tests for StateEntry."""

    def test_from_entries_prefers_local_metadata(self):
        """Size and mtime come from the local side, identity from remote."""
        local = TreeEntry("a.txt", EntryKind.FILE, size=5, mtime=123.0, checksum="abc")
        remote = TreeEntry(
            "a.txt", EntryKind.FILE, size=5, mtime=999.0, checksum="abc",
            remote_id="r1", revision="7",
        )
        entry = StateEntry.from_entries(local, remote, "a.txt")
        assert entry.checksum == "abc"
        assert entry.size == 5
        assert entry.mtime == 123.0
        assert entry.remote_id == "r1"
        assert entry.revision == "7"

    def test_from_entries_uses_remote_checksum_when_local_unhashed(self):
        """An unhashed local file takes the remote checksum."""
        local = TreeEntry("a.txt", EntryKind.FILE, size=5, mtime=1.0)
        remote = TreeEntry("a.txt", EntryKind.FILE, size=5, checksum="def", remote_id="r1")
        assert StateEntry.from_entries(local, remote, "a.txt").checksum == "def"

    def test_folder_entry(self):
        """Folders are recorded with their kind."""
        folder = TreeEntry("docs", EntryKind.FOLDER, remote_id="f1")
        entry = StateEntry.from_entries(None, folder, "docs")
        assert entry.is_folder
        assert entry.mtime is None

    def test_from_entries_needs_one_side(self):
        """An entry cannot be built without a local or remote entry."""
        with pytest.raises(ValueError, match="a.txt"):
            StateEntry.from_entries(None, None, "a.txt")

    def test_dict_round_trip(self):
        """to_dict/from_dict preserve every field."""
        entry = StateEntry("d/a.txt", EntryKind.FILE, "abc", 3, 1.5, "r1", "2")
        data = entry.to_dict()
        assert "path" not in data
        assert data["kind"] == "file"
        assert StateEntry.from_dict("d/a.txt", data) == entry


class TestStateStore:
    """Tests for StateStore."""

    def test_missing_file_loads_empty(self, temp_dir):
        """No state file means an empty state."""
        store = StateStore.for_root(temp_dir).load()
        assert len(store) == 0
        assert store.root_id is None

    def test_save_and_load(self, temp_dir):
        """Saved entries are restored by a new store."""
        store = StateStore.for_root(temp_dir)
        store.root_id = "root"
        store.put(StateEntry("a.txt", checksum="abc", size=3, mtime=1.0, remote_id="r1"))
        store.put(StateEntry("docs", kind=EntryKind.FOLDER, remote_id="f1"))
        assert store.dirty
        store.save()
        assert not store.dirty

        loaded = StateStore.for_root(temp_dir).load()
        assert loaded.root_id == "root"
        assert loaded.last_sync is not None
        assert loaded.get("a.txt") == store.get("a.txt")
        assert loaded.get("docs").is_folder

    def test_save_leaves_no_temporary_files(self, temp_dir):
        """The atomic write renames its temporary file away."""
        store = StateStore.for_root(temp_dir)
        store.put(StateEntry("a.txt"))
        store.save()
        store.save()
        assert sorted(p.name for p in temp_dir.iterdir()) == [STATE_FILE_NAME]

    def test_save_failure_raises_local_io_error(self, temp_dir):
        """An unwritable state location is reported as LocalIOError."""
        store = StateStore(temp_dir / "missing" / STATE_FILE_NAME)
        store.put(StateEntry("a.txt"))
        with pytest.raises(LocalIOError):
            store.save()

    def test_corrupt_file_loads_empty(self, temp_dir):
        """An unreadable state file is treated as no state."""
        (temp_dir / STATE_FILE_NAME).write_text("{not json")
        store = StateStore.for_root(temp_dir).load()
        assert len(store) == 0

    def test_wrong_shape_loads_empty(self, temp_dir):
        """A JSON document of the wrong shape is treated as no state."""
        (temp_dir / STATE_FILE_NAME).write_text(json.dumps(["a", "b"]))
        store = StateStore.for_root(temp_dir).load()
        assert len(store) == 0

    def test_clear(self, temp_dir):
        """clear() removes the file and the entries."""
        store = StateStore.for_root(temp_dir)
        store.put(StateEntry("a.txt"))
        store.save()
        assert store.clear() is True
        assert len(store) == 0
        assert not (temp_dir / STATE_FILE_NAME).exists()
        assert store.clear() is False

    def test_snapshot_respects_scope(self, temp_dir):
        """snapshot(scope) only returns entries inside the scope."""
        store = StateStore.for_root(temp_dir)
        for path in ["docs", "docs/a.txt", "docs2/b.txt", "other.txt"]:
            store.put(StateEntry(path))
        assert sorted(store.snapshot("docs")) == ["docs", "docs/a.txt"]
        assert len(store.snapshot()) == 4

    def test_remove_tree(self, temp_dir):
        """remove_tree drops a path and all descendants only."""
        store = StateStore.for_root(temp_dir)
        for path in ["d", "d/a.txt", "d/sub/b.txt", "dd.txt"]:
            store.put(StateEntry(path))
        store.remove_tree("d")
        assert sorted(store.snapshot()) == ["dd.txt"]

    def test_move_tree(self, temp_dir):
        """move_tree re-keys a folder and its descendants."""
        store = StateStore.for_root(temp_dir)
        store.put(StateEntry("old", kind=EntryKind.FOLDER))
        store.put(StateEntry("old/a.txt", checksum="abc"))
        store.put(StateEntry("older.txt"))
        store.move_tree("old", "new/place")
        assert sorted(store.snapshot()) == ["new/place", "new/place/a.txt", "older.txt"]
        assert store.get("new/place/a.txt").checksum == "abc"
        assert store.get("new/place/a.txt").path == "new/place/a.txt"

    def test_remove_missing_path_is_not_dirty(self, temp_dir):
        """Removing an unknown path does not mark the store dirty."""
        store = StateStore.for_root(temp_dir)
        store.remove("nothing")
        assert not store.dirty
