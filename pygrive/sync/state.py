"""State management for tracking sync history.

The state file remembers, for every path synced by the last run, the
checksum, size, modification time and remote identity observed at the end
of that run. Comparing the current trees against it is what lets the
reconciler tell edits from deletions and renames.
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..exceptions import LocalIOError
from ..utils import STATE_FILE_NAME, is_within_scope
from .scanner import EntryKind, TreeEntry

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


@dataclass(frozen=True)
class StateEntry:
    """Record of a path as it was at the end of the last successful sync."""

    path: str
    kind: EntryKind = EntryKind.FILE
    checksum: Optional[str] = None
    size: int = 0
    mtime: Optional[float] = None
    """Local modification time observed after the sync"""
    remote_id: Optional[str] = None
    revision: Optional[str] = None
    """Remote revision tag observed after the sync"""

    @property
    def is_folder(self) -> bool:
        return self.kind == EntryKind.FOLDER

    @classmethod
    def from_entries(
        cls, local: Optional[TreeEntry], remote: Optional[TreeEntry], path: str
    ) -> "StateEntry":
        """Build a state record from the local and remote views of a path.

        Local size/mtime are preferred since they drive the checksum cache;
        the checksum comes from whichever side has one.
        """
        source = local or remote
        if source is None:
            raise ValueError(f"No local or remote entry for {path}")
        checksum = None
        if local is not None and local.checksum:
            checksum = local.checksum
        elif remote is not None:
            checksum = remote.checksum
        return cls(
            path=path,
            kind=source.kind,
            checksum=checksum,
            size=source.size,
            mtime=local.mtime if local is not None else None,
            remote_id=remote.remote_id if remote is not None else None,
            revision=remote.revision if remote is not None else None,
        )

    def to_dict(self) -> dict:
        """Convert entry to dictionary for JSON serialization."""
        data = asdict(self)
        data.pop("path")
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, path: str, data: dict) -> "StateEntry":
        """Create StateEntry from dictionary."""
        return cls(
            path=path,
            kind=EntryKind(data.get("kind", EntryKind.FILE.value)),
            checksum=data.get("checksum"),
            size=int(data.get("size", 0)),
            mtime=data.get("mtime"),
            remote_id=data.get("remote_id"),
            revision=data.get("revision"),
        )


class StateStore:
    """Loads, updates and persists sync state for one sync root.

    The state is stored in ``<root>/.grive_state``. Writes go to a
    temporary file that is renamed over the old state, so an interrupted
    run never leaves a torn file behind. Updates are serialized with a
    lock because transfers may complete on several worker threads.
    """

    def __init__(self, state_file: Path):
        """Initialize state store.

        Args:
            state_file: Path of the state file
        """
        self.state_file = state_file
        self.root_id: Optional[str] = None
        self.last_sync: Optional[str] = None
        self._entries: dict[str, StateEntry] = {}
        self._lock = threading.Lock()
        self._dirty = False

    @classmethod
    def for_root(cls, root: Path) -> "StateStore":
        """Create a store for the state file of a sync root."""
        return cls(root / STATE_FILE_NAME)

    @property
    def dirty(self) -> bool:
        return self._dirty

    def load(self) -> "StateStore":
        """Load state from disk.

        A missing file means nothing was synced yet. An unreadable file is
        logged and treated the same way: with no prior state nothing is
        ever classified as deleted.

        Returns:
            self, for chaining
        """
        self._entries = {}
        if not self.state_file.exists():
            logger.debug(f"No sync state found at {self.state_file}")
            return self

        try:
            with open(self.state_file, encoding="utf-8") as f:
                data = json.load(f)
            entries = {
                path: StateEntry.from_dict(path, item)
                for path, item in data.get("entries", {}).items()
            }
        except (OSError, json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Failed to load sync state: {e}")
            return self

        self._entries = entries
        self.root_id = data.get("root_id")
        self.last_sync = data.get("last_sync")
        logger.debug(
            f"Loaded sync state with {len(self._entries)} entries from {self.last_sync}"
        )
        return self

    def save(self) -> None:
        """Persist state atomically (write temporary file, then rename).

        Raises:
            LocalIOError: If the state file cannot be written
        """
        with self._lock:
            self.last_sync = datetime.now().isoformat()
            data: dict[str, Any] = {
                "version": STATE_FORMAT_VERSION,
                "root_id": self.root_id,
                "last_sync": self.last_sync,
                "entries": {
                    path: self._entries[path].to_dict() for path in sorted(self._entries)
                },
            }
            directory = self.state_file.parent
            try:
                fd, tmp_name = tempfile.mkstemp(
                    dir=directory, prefix=f"{STATE_FILE_NAME}.", suffix=".tmp"
                )
            except OSError as e:
                raise LocalIOError(f"Failed to save sync state: {e}") from e
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.state_file)
            except OSError as e:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise LocalIOError(f"Failed to save sync state: {e}") from e
            self._dirty = False
        logger.debug(f"Saved sync state with {len(data['entries'])} entries to {self.state_file}")

    def clear(self) -> bool:
        """Delete the state file.

        Returns:
            True if state was cleared, False if no state existed
        """
        with self._lock:
            self._entries = {}
            if self.state_file.exists():
                self.state_file.unlink()
                logger.debug(f"Cleared sync state at {self.state_file}")
                return True
            return False

    # ------------------------------------------------------------------
    # Entry access
    # ------------------------------------------------------------------

    def get(self, path: str) -> Optional[StateEntry]:
        return self._entries.get(path)

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def snapshot(self, scope: str = "") -> dict[str, StateEntry]:
        """Return a copy of the entries, optionally restricted to a scope."""
        with self._lock:
            return {
                path: entry
                for path, entry in self._entries.items()
                if is_within_scope(path, scope)
            }

    def put(self, entry: StateEntry) -> None:
        """Add or replace the entry for ``entry.path``."""
        with self._lock:
            self._entries[entry.path] = entry
            self._dirty = True

    def remove(self, path: str) -> None:
        """Remove the entry for a single path."""
        with self._lock:
            if self._entries.pop(path, None) is not None:
                self._dirty = True

    def remove_tree(self, path: str) -> None:
        """Remove the entry for a path and every entry below it."""
        with self._lock:
            doomed = [p for p in self._entries if is_within_scope(p, path)]
            for p in doomed:
                del self._entries[p]
            if doomed:
                self._dirty = True

    def move_tree(self, old_path: str, new_path: str) -> None:
        """Re-key an entry and its descendants after a move."""
        with self._lock:
            moved = [p for p in self._entries if is_within_scope(p, old_path)]
            for p in moved:
                entry = self._entries.pop(p)
                target = new_path + p[len(old_path):]
                self._entries[target] = replace(entry, path=target)
            if moved:
                self._dirty = True
