"""Local and remote tree scanning for sync operations."""

import logging
import stat
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, Optional

from ..exceptions import DriveAPIError, DriveAuthenticationError, LocalIOError, RemoteQueryError
from ..models import DriveEntry
from ..utils import (
    DEFAULT_MAX_WORKERS,
    calculate_md5,
    is_reserved_name,
    is_temp_name,
    normalize_scope,
)
from .ignore import IgnoreMatcher

logger = logging.getLogger(__name__)


class EntryKind(str, Enum):
    """Kind of a tree entry."""

    FILE = "file"
    FOLDER = "folder"


@dataclass
class TreeEntry:
    """One local filesystem or remote object."""

    path: str
    """Relative path (using forward slashes, unique within a snapshot)"""

    kind: EntryKind

    size: int = 0
    """File size in bytes"""

    mtime: Optional[float] = None
    """Last modification time (Unix timestamp)"""

    checksum: Optional[str] = None
    """MD5 hex digest; None for local files until computed"""

    remote_id: Optional[str] = None
    """Stable remote identifier (remote entries only)"""

    revision: Optional[str] = None
    """Remote revision tag (remote entries only)"""

    trashed: bool = False
    """Whether the remote object sits in the trash"""

    parent_id: Optional[str] = None
    """Remote parent folder ID (remote entries only)"""

    local_path: Optional[Path] = None
    """Absolute path on disk (local entries only)"""

    @property
    def is_file(self) -> bool:
        return self.kind == EntryKind.FILE

    @property
    def is_folder(self) -> bool:
        return self.kind == EntryKind.FOLDER

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @classmethod
    def from_drive_entry(cls, entry: DriveEntry) -> "TreeEntry":
        """Create a remote TreeEntry from a Drive API entry."""
        return cls(
            path=entry.path,
            kind=EntryKind.FOLDER if entry.is_folder else EntryKind.FILE,
            size=entry.size,
            mtime=entry.modified,
            checksum=entry.md5,
            remote_id=entry.id,
            revision=entry.version,
            trashed=entry.trashed,
            parent_id=entry.parent_id,
        )


@dataclass
class TreeSnapshot:
    """All entries of one tree as observed during a single run."""

    entries: dict[str, TreeEntry] = field(default_factory=dict)

    scope: str = ""
    """Subdirectory the scan was restricted to ("" for the whole tree)"""

    root_id: Optional[str] = None
    """Remote folder ID of the sync root (remote snapshots only)"""

    warnings: list[str] = field(default_factory=list)
    """Entries that could not be read"""

    skipped: set[str] = field(default_factory=set)
    """Paths whose state is unknown this run; they and their descendants
    must not be acted upon"""

    def add(self, entry: TreeEntry) -> None:
        self.entries[entry.path] = entry

    def get(self, path: str) -> Optional[TreeEntry]:
        return self.entries.get(path)

    def remove(self, path: str) -> None:
        self.entries.pop(path, None)

    def __contains__(self, path: object) -> bool:
        return path in self.entries

    def __iter__(self) -> Iterator[TreeEntry]:
        for path in sorted(self.entries):
            yield self.entries[path]

    def __len__(self) -> int:
        return len(self.entries)

    def files(self) -> list[TreeEntry]:
        return [e for e in self if e.is_file]

    def folders(self) -> list[TreeEntry]:
        return [e for e in self if e.is_folder]

    def skip(self, path: str, reason: str) -> None:
        """Record an entry that could not be read this run."""
        message = f"{path}: {reason}"
        logger.warning(f"Skipping {message}")
        self.warnings.append(message)
        self.skipped.add(path)

    def is_skipped(self, path: str) -> bool:
        """Check whether a path or one of its parents was skipped."""
        if not self.skipped:
            return False
        parts = path.split("/")
        return any(
            "/".join(parts[:depth]) in self.skipped for depth in range(1, len(parts) + 1)
        )


class LocalTreeScanner:
    """Scans the local sync root into a TreeSnapshot.

    Only regular files and directories are recorded; symbolic links,
    device files, sockets and FIFOs are skipped. Checksums are not
    computed during the scan, see ``compute_checksums``.

    Examples:
        >>> scanner = LocalTreeScanner(Path("/sync/folder"))
        >>> snapshot = scanner.scan()
        >>> # Paths matching .griveignore rules are excluded
    """

    def __init__(
        self,
        root: Path,
        matcher: Optional[IgnoreMatcher] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        """Initialize local scanner.

        Args:
            root: Sync root directory
            matcher: Ignore rules to apply
            max_workers: Parallel workers used for checksum computation
        """
        self.root = root
        self.matcher = matcher or IgnoreMatcher()
        self.max_workers = max_workers

    def scan(self, scope: Optional[str] = None) -> TreeSnapshot:
        """Scan the local tree.

        Args:
            scope: Optional subdirectory to restrict the scan to

        Returns:
            TreeSnapshot of local entries

        Raises:
            LocalIOError: If the sync root or the scope directory cannot be listed
        """
        scope = normalize_scope(scope)
        snapshot = TreeSnapshot(scope=scope)
        start = time.time()

        if not self.root.is_dir():
            raise LocalIOError(f"Sync root is not a directory: {self.root}", "")

        directory = self.root
        rel_prefix = ""
        for name in [p for p in scope.split("/") if p]:
            directory = directory / name
            rel_prefix = f"{rel_prefix}/{name}" if rel_prefix else name
            try:
                st = directory.lstat()
            except FileNotFoundError:
                # Scope not present locally yet
                logger.debug(f"Scope {scope} does not exist locally")
                return snapshot
            except OSError as e:
                raise LocalIOError(f"Cannot access {directory}: {e}", rel_prefix) from e
            if not stat.S_ISDIR(st.st_mode):
                raise LocalIOError(f"Scope is not a directory: {directory}", rel_prefix)
            snapshot.add(self._make_entry(directory, rel_prefix, st))

        try:
            children = sorted(directory.iterdir())
        except OSError as e:
            raise LocalIOError(f"Cannot list directory {directory}: {e}", rel_prefix) from e

        self._scan_children(children, rel_prefix, snapshot)
        logger.debug(
            f"Local scan of {self.root} found {len(snapshot)} entries "
            f"in {time.time() - start:.2f}s"
        )
        return snapshot

    def _make_entry(self, item: Path, rel_path: str, st) -> TreeEntry:
        if stat.S_ISDIR(st.st_mode):
            return TreeEntry(
                path=rel_path,
                kind=EntryKind.FOLDER,
                mtime=st.st_mtime,
                local_path=item,
            )
        return TreeEntry(
            path=rel_path,
            kind=EntryKind.FILE,
            size=st.st_size,
            mtime=st.st_mtime,
            local_path=item,
        )

    def _scan_children(
        self, children: Iterable[Path], rel_prefix: str, snapshot: TreeSnapshot
    ) -> None:
        for item in children:
            rel_path = f"{rel_prefix}/{item.name}" if rel_prefix else item.name

            if not rel_prefix and is_reserved_name(item.name):
                continue
            if is_temp_name(item.name):
                # Partial download from an interrupted run
                continue
            if self.matcher.matches(rel_path):
                logger.debug(f"Ignoring (from rules): {rel_path}")
                continue

            try:
                st = item.lstat()
            except OSError as e:
                snapshot.skip(rel_path, f"cannot stat: {e}")
                continue

            if stat.S_ISLNK(st.st_mode):
                logger.debug(f"Skipping symbolic link: {rel_path}")
                continue

            if stat.S_ISDIR(st.st_mode):
                snapshot.add(self._make_entry(item, rel_path, st))
                try:
                    grandchildren = sorted(item.iterdir())
                except OSError as e:
                    snapshot.remove(rel_path)
                    snapshot.skip(rel_path, f"cannot list directory: {e}")
                    continue
                self._scan_children(grandchildren, rel_path, snapshot)
            elif stat.S_ISREG(st.st_mode):
                snapshot.add(self._make_entry(item, rel_path, st))
            else:
                logger.debug(f"Skipping special file: {rel_path}")

    def compute_checksums(self, snapshot: TreeSnapshot, paths: Iterable[str]) -> None:
        """Compute checksums for the given file entries in parallel.

        Files that cannot be read are removed from the snapshot and marked
        as skipped.

        Args:
            snapshot: Local snapshot to update in place
            paths: Relative paths of file entries needing a checksum
        """
        pending = [
            snapshot.entries[p]
            for p in sorted(set(paths))
            if p in snapshot and snapshot.entries[p].is_file
            and snapshot.entries[p].checksum is None
        ]
        if not pending:
            return

        start = time.time()

        def hash_entry(entry: TreeEntry) -> str:
            path = entry.local_path or self.root.joinpath(*entry.path.split("/"))
            return calculate_md5(path)

        with ThreadPoolExecutor(max_workers=max(1, self.max_workers)) as executor:
            futures = {executor.submit(hash_entry, entry): entry for entry in pending}
            for future in as_completed(futures):
                entry = futures[future]
                try:
                    entry.checksum = future.result()
                except OSError as e:
                    snapshot.remove(entry.path)
                    snapshot.skip(entry.path, f"cannot read: {e}")

        logger.debug(
            f"Computed {len(pending)} checksum(s) in {time.time() - start:.2f}s"
        )


class RemoteTreeScanner:
    """Builds a TreeSnapshot of the remote drive.

    Google-native documents have no binary content and are skipped.
    When several live entries share a path, the one with the smallest ID
    is kept and a warning is recorded.
    """

    def __init__(
        self,
        client,
        matcher: Optional[IgnoreMatcher] = None,
        root_id: str = "root",
    ):
        """Initialize remote scanner.

        Args:
            client: Remote drive (``DriveClient`` or compatible)
            matcher: Ignore rules to apply
            root_id: Remote folder mapped to the sync root
        """
        self.client = client
        self.matcher = matcher or IgnoreMatcher()
        self.root_id = root_id

    def scan(self, scope: Optional[str] = None) -> TreeSnapshot:
        """Scan the remote tree.

        Args:
            scope: Optional subdirectory to restrict the scan to

        Returns:
            TreeSnapshot of remote entries, trashed ones included

        Raises:
            RemoteQueryError: If the remote tree cannot be listed
            DriveAuthenticationError: If the access token is rejected
        """
        scope = normalize_scope(scope)
        snapshot = TreeSnapshot(scope=scope, root_id=self.root_id)
        start = time.time()

        try:
            drive_entries = list(self.client.list_tree(scope, self.root_id))
        except DriveAuthenticationError:
            raise
        except DriveAPIError as e:
            raise RemoteQueryError(f"Failed to list remote tree: {e}") from e

        for drive_entry in drive_entries:
            self._add_entry(snapshot, drive_entry)

        logger.debug(
            f"Remote scan found {len(snapshot)} entries in {time.time() - start:.2f}s"
        )
        return snapshot

    def _add_entry(self, snapshot: TreeSnapshot, drive_entry: DriveEntry) -> None:
        path = drive_entry.path
        if drive_entry.is_native_document:
            logger.debug(f"Skipping Google document: {path}")
            return
        if "/" not in path and is_reserved_name(path):
            return
        if self.matcher.is_excluded(path):
            logger.debug(f"Ignoring (from rules): {path}")
            return

        entry = TreeEntry.from_drive_entry(drive_entry)
        existing = snapshot.get(path)
        if existing is None:
            snapshot.add(entry)
            return

        # Live entries take precedence over trashed ones at the same path
        if existing.trashed and not entry.trashed:
            snapshot.add(entry)
        elif existing.trashed == entry.trashed:
            if not entry.trashed:
                message = f"{path}: duplicate remote name, keeping {min(existing.remote_id or '', entry.remote_id or '')}"
                logger.warning(message)
                snapshot.warnings.append(message)
            if (entry.remote_id or "") < (existing.remote_id or ""):
                snapshot.add(entry)
