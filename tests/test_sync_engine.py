"""Tests for the sync engine."""

import json
import os
from unittest.mock import Mock

import pytest

from pygrive.exceptions import DriveServerError, LocalIOError, RemoteQueryError
from pygrive.output import OutputFormatter
from pygrive.sync import ActionType, StateStore, SyncEngine, SyncOptions
from pygrive.utils import STATE_FILE_NAME


def write(root, rel_path, content, mtime=None):
    path = root / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


class TestSyncEngine:
    """Test SyncEngine functionality."""

    @pytest.fixture
    def mock_output(self):
        """Create a mock output formatter."""
        output = Mock(spec=OutputFormatter)
        output.quiet = True  # Suppress output during tests
        return output

    @pytest.fixture
    def engine(self, fake_drive, mock_output):
        """Create a sync engine over the in-memory drive."""
        return SyncEngine(fake_drive, mock_output)

    def test_missing_root(self, engine, temp_dir):
        """A sync root that does not exist is rejected."""
        with pytest.raises(LocalIOError, match="does not exist"):
            engine.sync(temp_dir / "nonexistent")

    def test_root_is_a_file(self, engine, temp_dir):
        """A sync root that is a file is rejected."""
        test_file = write(temp_dir, "test.txt", b"test")
        with pytest.raises(LocalIOError, match="not a directory"):
            engine.sync(test_file)

    def test_empty_trees(self, engine, temp_dir):
        """Nothing to do for two empty trees."""
        result = engine.sync(temp_dir)
        assert len(result.plan) == 0
        assert result.report.success
        assert (temp_dir / STATE_FILE_NAME).exists()

    def test_two_way_merge(self, engine, fake_drive, temp_dir):
        """Local and remote additions in one folder are merged both ways."""
        write(temp_dir, "docs/a.txt", b"local A")
        fake_drive.add_file("docs/b.txt", b"remote B")

        result = engine.sync(temp_dir)

        assert result.report.success
        assert fake_drive.live_files() == {
            "docs/a.txt": b"local A",
            "docs/b.txt": b"remote B",
        }
        assert (temp_dir / "docs" / "b.txt").read_bytes() == b"remote B"
        state = StateStore.for_root(temp_dir).load()
        assert sorted(state.snapshot()) == ["docs", "docs/a.txt", "docs/b.txt"]
        assert state.root_id == "root"
        stats = result.stats()
        assert stats["uploads"] == 1
        assert stats["downloads"] == 1

    def test_second_run_converges(self, engine, fake_drive, temp_dir):
        """After a successful sync the next run has nothing to do."""
        write(temp_dir, "docs/a.txt", b"local A")
        fake_drive.add_file("docs/b.txt", b"remote B")
        engine.sync(temp_dir)
        fake_drive.calls.clear()

        result = engine.sync(temp_dir)

        assert result.plan.changes == []
        assert [c[0] for c in fake_drive.calls] == ["list_tree"]

    def test_dry_run_changes_nothing(self, engine, fake_drive, temp_dir):
        """A dry run plans but neither transfers nor writes state."""
        write(temp_dir, "a.txt", b"local")
        fake_drive.add_file("b.txt", b"remote")

        result = engine.sync(temp_dir, SyncOptions(dry_run=True))

        assert result.dry_run
        assert result.report is None
        assert result.stats()["uploads"] == 1
        assert result.stats()["downloads"] == 1
        assert not (temp_dir / STATE_FILE_NAME).exists()
        assert not (temp_dir / "b.txt").exists()
        assert fake_drive.live_files() == {"b.txt": b"remote"}

    def test_local_rename_is_a_remote_move(self, engine, fake_drive, temp_dir):
        """Renaming a synced file renames it remotely without re-uploading."""
        write(temp_dir, "a.txt", b"some content")
        engine.sync(temp_dir)
        os.rename(temp_dir / "a.txt", temp_dir / "b.txt")
        fake_drive.calls.clear()

        result = engine.sync(temp_dir)

        assert [(a.type, a.from_path, a.path) for a in result.plan.changes] == [
            (ActionType.MOVE, "a.txt", "b.txt")
        ]
        assert not [c for c in fake_drive.calls if c[0] == "upload"]
        assert fake_drive.live_files() == {"b.txt": b"some content"}

    def test_conflict_is_stable(self, engine, fake_drive, temp_dir):
        """Conflicts are reported on every run until resolved."""
        item = fake_drive.add_file("a.txt", b"original")
        engine.sync(temp_dir)
        write(temp_dir, "a.txt", b"local edit", mtime=1_800_000_000.0)
        item.content = b"remote edit"
        item.version += 1

        first = engine.sync(temp_dir)
        second = engine.sync(temp_dir)

        assert first.conflicts == ["a.txt"]
        assert second.conflicts == ["a.txt"]
        assert (temp_dir / "a.txt").read_bytes() == b"local edit"
        assert item.content == b"remote edit"

    def test_force_resolves_to_remote(self, engine, fake_drive, temp_dir):
        """force downloads the remote version and keeps the local copy in trash."""
        item = fake_drive.add_file("a.txt", b"original")
        engine.sync(temp_dir)
        write(temp_dir, "a.txt", b"local edit", mtime=1_800_000_000.0)
        item.content = b"remote edit"
        item.version += 1

        result = engine.sync(temp_dir, SyncOptions(force=True))

        assert result.conflicts == []
        assert (temp_dir / "a.txt").read_bytes() == b"remote edit"
        assert (temp_dir / ".trash" / "a.txt").read_bytes() == b"local edit"
        assert engine.sync(temp_dir).plan.changes == []

    def test_deletions_propagate_to_trash(self, engine, fake_drive, temp_dir):
        """Deletions on either side end up in the other side's trash."""
        write(temp_dir, "local.txt", b"L")
        remote_item = fake_drive.add_file("remote.txt", b"R")
        engine.sync(temp_dir)
        local_id = fake_drive.find("local.txt").id

        (temp_dir / "local.txt").unlink()
        fake_drive.trash(remote_item.id)
        result = engine.sync(temp_dir)

        assert result.stats()["deletes_local"] == 1
        assert result.stats()["deletes_remote"] == 1
        assert fake_drive.items[local_id].trashed
        assert (temp_dir / ".trash" / "remote.txt").read_bytes() == b"R"
        assert len(StateStore.for_root(temp_dir).load()) == 0

    def test_remote_trash_is_not_downloaded(self, engine, fake_drive, temp_dir):
        """Files already in the remote trash on the first run stay there."""
        item = fake_drive.add_file("old.txt", b"binned")
        fake_drive.trash(item.id)

        result = engine.sync(temp_dir)

        assert result.plan.changes == []
        assert result.report.success
        assert not (temp_dir / "old.txt").exists()

    def test_scope_isolation(self, engine, fake_drive, temp_dir):
        """A scoped run leaves everything outside the scope alone."""
        write(temp_dir, "sub/in.txt", b"in")
        write(temp_dir, "out.txt", b"out")
        fake_drive.add_file("other/remote.txt", b"r")

        result = engine.sync(temp_dir, SyncOptions(scope="sub"))

        assert [a.path for a in result.plan.changes] == ["sub", "sub/in.txt"]
        assert fake_drive.live_files() == {"sub/in.txt": b"in", "other/remote.txt": b"r"}
        assert not (temp_dir / "other").exists()

    def test_scoped_run_keeps_state_outside_scope(self, engine, fake_drive, temp_dir):
        """State entries outside the scope survive a scoped run."""
        write(temp_dir, "out.txt", b"out")
        engine.sync(temp_dir)
        write(temp_dir, "sub/in.txt", b"in")

        engine.sync(temp_dir, SyncOptions(scope="sub"))

        state = StateStore.for_root(temp_dir).load()
        assert "out.txt" in state
        assert "sub/in.txt" in state

    def test_ignore_file_rules(self, engine, fake_drive, temp_dir):
        """Paths matched by .griveignore are neither uploaded nor downloaded."""
        write(temp_dir, ".griveignore", b"*.log\n!keep.log\n")
        write(temp_dir, "debug.log", b"noise")
        write(temp_dir, "keep.log", b"keep")
        fake_drive.add_file("remote.log", b"remote noise")

        engine.sync(temp_dir)

        assert sorted(fake_drive.live_files()) == [
            ".griveignore",
            "keep.log",
            "remote.log",
        ]
        assert not (temp_dir / "remote.log").exists()

    def test_extra_ignore_lines(self, engine, fake_drive, temp_dir):
        """Rules passed by the caller apply like file rules."""
        write(temp_dir, "a.bak", b"x")
        engine.sync(temp_dir, ignore_lines=["*.bak"])
        assert fake_drive.live_files() == {}

    def test_remote_query_failure_aborts(self, engine, fake_drive, temp_dir):
        """A failed remote listing changes nothing locally."""
        write(temp_dir, "a.txt", b"x")
        engine.sync(temp_dir)
        state_before = (temp_dir / STATE_FILE_NAME).read_text()
        fake_drive.list_error = DriveServerError("Backend Error", 503)

        with pytest.raises(RemoteQueryError):
            engine.sync(temp_dir)

        assert (temp_dir / "a.txt").exists()
        assert (temp_dir / STATE_FILE_NAME).read_text() == state_before

    def test_state_for_other_root_is_discarded(self, fake_drive, mock_output, temp_dir):
        """State recorded against another remote folder is not trusted."""
        (temp_dir / STATE_FILE_NAME).write_text(
            json.dumps(
                {
                    "version": 1,
                    "root_id": "some-other-folder",
                    "entries": {"a.txt": {"kind": "file", "checksum": "x", "size": 1}},
                }
            )
        )
        fake_drive.add_file("a.txt", b"remote")
        engine = SyncEngine(fake_drive, mock_output)

        result = engine.sync(temp_dir)

        mock_output.warning.assert_any_call(
            "Sync state belongs to remote folder some-other-folder, "
            "not root; starting from scratch"
        )
        assert result.plan.of_type(ActionType.DOWNLOAD)[0].path == "a.txt"
        assert StateStore.for_root(temp_dir).load().root_id == "root"

    def test_upload_only(self, engine, fake_drive, temp_dir):
        """upload_only uploads but never touches local files."""
        write(temp_dir, "a.txt", b"local")
        fake_drive.add_file("b.txt", b"remote")

        engine.sync(temp_dir, SyncOptions(upload_only=True))

        assert "a.txt" in fake_drive.live_files()
        assert not (temp_dir / "b.txt").exists()

    def test_failed_actions_are_reported(self, engine, fake_drive, temp_dir):
        """Per-file failures end up in the report and the summary."""
        write(temp_dir, "a.txt", b"x")
        fake_drive.fail_uploads["a.txt"] = LocalIOError("disk on fire", "a.txt")

        result = engine.sync(temp_dir)

        assert result.report.failed_paths == ["a.txt"]
        assert result.stats()["failed"] == 1
        assert "a.txt" not in StateStore.for_root(temp_dir).load()


class TestSyncEngineOutput:
    """Tests for the plan and summary messages."""

    def test_plan_and_summary_messages(self, fake_drive, temp_dir):
        """The plan and summary are printed when not quiet."""
        output = Mock(spec=OutputFormatter)
        output.quiet = False
        write(temp_dir, "a.txt", b"x")

        SyncEngine(fake_drive, output).sync(temp_dir)

        messages = [c.args[0] for c in output.info.call_args_list]
        assert f"Syncing: {temp_dir}" in messages
        assert "  ↑ Upload: 1 file(s)" in messages
        assert "  Data: 1 B up, 0 B down" in messages
        assert "  Uploaded: 1" in messages
        output.success.assert_called_with("Sync complete!")

    def test_dry_run_lists_actions(self, fake_drive, temp_dir):
        """Dry runs list every planned change."""
        output = Mock(spec=OutputFormatter)
        output.quiet = False
        write(temp_dir, "a.txt", b"x")

        SyncEngine(fake_drive, output).sync(temp_dir, SyncOptions(dry_run=True))

        messages = [c.args[0] for c in output.info.call_args_list]
        assert "    upload: a.txt" in messages
        output.success.assert_called_with("Dry run complete!")
