"""Reconciliation of local, remote and previously synced state.

The reconciler compares three observations of every path (the local
tree, the remote tree and the state recorded by the last successful sync)
and derives an ordered plan of actions. It performs no I/O: checksums it
needs are requested up front through ``required_checksums`` and computed
by the caller before ``plan`` is called.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Mapping, Optional

from ..utils import is_within_scope, path_distance
from .ignore import IgnoreMatcher
from .options import SyncOptions
from .scanner import TreeEntry, TreeSnapshot
from .state import StateEntry

logger = logging.getLogger(__name__)

# Modification times closer than this are considered equal
MTIME_TOLERANCE = 0.001

KIND_CONFLICT_REASON = "File and folder at the same path"


class ActionType(str, Enum):
    """Actions that can be planned during sync."""

    CREATE_REMOTE_FOLDER = "create_remote_folder"
    """Create a folder on the remote drive"""

    CREATE_LOCAL_FOLDER = "create_local_folder"
    """Create a local directory"""

    MOVE = "move"
    """Move or rename an entry on one side"""

    UPLOAD = "upload"
    """Upload local file to remote"""

    DOWNLOAD = "download"
    """Download remote file to local"""

    DELETE_LOCAL = "delete_local"
    """Move a local entry into the local trash"""

    DELETE_REMOTE = "delete_remote"
    """Move a remote entry into the remote trash"""

    CONFLICT = "conflict"
    """Both sides changed; reported and left alone"""

    NO_OP = "no_op"
    """Nothing to transfer"""


class Side(str, Enum):
    """Tree an action is applied to."""

    LOCAL = "local"
    REMOTE = "remote"


class StateChange(str, Enum):
    """What a NO_OP action does to the path's state entry."""

    KEEP = "keep"
    RECORD = "record"
    DROP = "drop"


# Execution order: folders first so children have a parent, deletions last
# so moves out of a deleted folder happen before the folder goes away.
_PHASES = {
    ActionType.CREATE_REMOTE_FOLDER: 0,
    ActionType.CREATE_LOCAL_FOLDER: 0,
    ActionType.MOVE: 1,
    ActionType.UPLOAD: 2,
    ActionType.DOWNLOAD: 2,
    ActionType.DELETE_LOCAL: 3,
    ActionType.DELETE_REMOTE: 3,
    ActionType.CONFLICT: 4,
    ActionType.NO_OP: 4,
}


@dataclass
class SyncAction:
    """A single planned action."""

    type: ActionType
    """Action to take"""

    path: str
    """Relative path the action produces (destination for moves)"""

    reason: str
    """Human-readable reason for this action"""

    local: Optional[TreeEntry] = None
    """Local entry involved (source entry for local moves)"""

    remote: Optional[TreeEntry] = None
    """Remote entry involved (source entry for remote moves)"""

    state: Optional[StateEntry] = None
    """State entry of the path (of the source path for moves)"""

    from_path: Optional[str] = None
    """Source path of a move"""

    target: Optional[Side] = None
    """Side a move is applied to"""

    new_revision: bool = False
    """Forwarded to uploads: keep a new remote revision"""

    forced: bool = False
    """Download resolving a conflict in favour of the remote side"""

    state_change: StateChange = StateChange.KEEP
    """Effect of a NO_OP on the state entry"""

    @property
    def phase(self) -> int:
        return _PHASES[self.type]

    @property
    def sort_key(self) -> tuple:
        return (self.phase, self.path.split("/"))

    def describe(self) -> str:
        """One-line description for plan listings."""
        if self.type == ActionType.MOVE:
            return f"{self.from_path} -> {self.path} ({self.target.value if self.target else '?'})"
        return self.path

    def __str__(self) -> str:
        return f"{self.type.value}: {self.describe()}"


@dataclass
class SyncPlan:
    """Ordered sequence of planned actions."""

    actions: list[SyncAction]
    scope: str = ""

    def __iter__(self) -> Iterator[SyncAction]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)

    def of_type(self, action_type: ActionType) -> list[SyncAction]:
        return [a for a in self.actions if a.type == action_type]

    def for_path(self, path: str) -> list[SyncAction]:
        return [a for a in self.actions if a.path == path or a.from_path == path]

    @property
    def conflicts(self) -> list[SyncAction]:
        return self.of_type(ActionType.CONFLICT)

    @property
    def executable(self) -> list[SyncAction]:
        """Actions handed to the executor (conflicts are never executed)."""
        return [a for a in self.actions if a.type != ActionType.CONFLICT]

    @property
    def changes(self) -> list[SyncAction]:
        """Actions that modify either tree."""
        return [
            a
            for a in self.actions
            if a.type not in (ActionType.CONFLICT, ActionType.NO_OP)
        ]

    def counts(self) -> dict[str, int]:
        counts = {action_type.value: 0 for action_type in ActionType}
        for action in self.actions:
            counts[action.type.value] += 1
        return counts


class Reconciler:
    """Derives a SyncPlan from local, remote and prior state.

    Examples:
        >>> reconciler = Reconciler(SyncOptions())
        >>> needed = reconciler.required_checksums(local, remote, state)
        >>> local_scanner.compute_checksums(local, needed)
        >>> plan = reconciler.plan(local, remote, state)
    """

    def __init__(
        self,
        options: Optional[SyncOptions] = None,
        matcher: Optional[IgnoreMatcher] = None,
    ):
        """Initialize reconciler.

        Args:
            options: Sync options (scope, force, upload-only, ...)
            matcher: Ignore rules; state entries matching them are left alone
        """
        self.options = options or SyncOptions()
        self.matcher = matcher or IgnoreMatcher()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _considered(
        self, path: str, local: TreeSnapshot, remote: TreeSnapshot
    ) -> bool:
        if not is_within_scope(path, self.options.scope):
            return False
        if self.matcher.is_excluded(path):
            return False
        return not (local.is_skipped(path) or remote.is_skipped(path))

    @staticmethod
    def _live(remote: TreeSnapshot, path: str) -> Optional[TreeEntry]:
        entry = remote.get(path)
        if entry is None or entry.trashed:
            return None
        return entry

    def _trusted_unchanged(self, local: TreeEntry, st: StateEntry) -> bool:
        """Checksum cache: same size and mtime means same content."""
        if not self.options.trust_mtime:
            return False
        if local.mtime is None or st.mtime is None:
            return False
        return local.size == st.size and abs(local.mtime - st.mtime) < MTIME_TOLERANCE

    def _local_changed(self, local: TreeEntry, st: StateEntry) -> bool:
        if local.is_folder:
            return False
        if self._trusted_unchanged(local, st):
            return False
        if local.checksum is None:
            raise ValueError(f"Checksum required but not computed for {local.path}")
        return local.checksum != st.checksum

    @staticmethod
    def _remote_changed(remote: TreeEntry, st: StateEntry) -> bool:
        if remote.is_folder:
            return False
        same_object = remote.remote_id == st.remote_id
        if same_object and remote.revision is not None and remote.revision == st.revision:
            return False
        if remote.checksum is not None and st.checksum is not None:
            return remote.checksum != st.checksum
        return not same_object or remote.revision != st.revision

    @staticmethod
    def _same_content(local: TreeEntry, remote: TreeEntry) -> bool:
        if local.checksum is None:
            raise ValueError(f"Checksum required but not computed for {local.path}")
        return (
            remote.checksum is not None
            and local.checksum == remote.checksum
            and local.size == remote.size
        )

    def _all_paths(
        self,
        local: TreeSnapshot,
        remote: TreeSnapshot,
        state: Mapping[str, StateEntry],
    ) -> list[str]:
        paths = set(local.entries) | set(remote.entries) | set(state)
        return sorted(p for p in paths if self._considered(p, local, remote))

    # ------------------------------------------------------------------
    # Checksum requirements
    # ------------------------------------------------------------------

    def required_checksums(
        self,
        local: TreeSnapshot,
        remote: TreeSnapshot,
        state: Mapping[str, StateEntry],
    ) -> set[str]:
        """Local files whose checksum must be known before planning.

        A file needs hashing when its size or mtime differs from its state
        entry, when it exists on both sides without prior state, or when it
        is new and could be the destination of a rename.

        Args:
            local: Local snapshot
            remote: Remote snapshot
            state: Prior state entries

        Returns:
            Set of relative paths
        """
        missing_sizes = {
            st.size
            for path, st in state.items()
            if not st.is_folder
            and st.checksum
            and path not in local
            and self._considered(path, local, remote)
        }

        needed: set[str] = set()
        for entry in local.files():
            if entry.checksum is not None or not self._considered(entry.path, local, remote):
                continue
            st = state.get(entry.path)
            if st is not None:
                if not st.is_folder and not self._trusted_unchanged(entry, st):
                    needed.add(entry.path)
            elif self._live(remote, entry.path) is not None:
                needed.add(entry.path)
            elif entry.size in missing_sizes:
                needed.add(entry.path)
        return needed

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(
        self,
        local: TreeSnapshot,
        remote: TreeSnapshot,
        state: Mapping[str, StateEntry],
    ) -> SyncPlan:
        """Compute the sync plan.

        Args:
            local: Local snapshot (with required checksums computed)
            remote: Remote snapshot
            state: Prior state entries keyed by path

        Returns:
            Ordered SyncPlan

        Raises:
            ValueError: If a checksum needed for a decision was not computed
        """
        paths = self._all_paths(local, remote, state)
        actions: dict[str, SyncAction] = {}
        moves: list[SyncAction] = []

        local_new: list[str] = []
        local_missing: list[str] = []
        remote_new: list[str] = []
        remote_missing: list[str] = []

        for path in paths:
            loc = local.get(path)
            rem = self._live(remote, path)
            st = state.get(path)
            if st is None and loc is not None and rem is None and loc.is_file:
                local_new.append(path)
            elif st is None and loc is None and rem is not None and rem.is_file:
                remote_new.append(path)
            elif (
                st is not None and not st.is_folder and loc is None and rem is not None
                and rem.is_file and not self._remote_changed(rem, st)
            ):
                local_missing.append(path)
            elif (
                st is not None and not st.is_folder and rem is None and loc is not None
                and loc.is_file and not self._local_changed(loc, st)
            ):
                remote_missing.append(path)

        for move in self._match_local_renames(local, remote, state, local_new, local_missing):
            moves.append(move)
        if self.options.allows_local_changes:
            for move in self._match_remote_renames(
                local, remote, state, remote_new, remote_missing
            ):
                moves.append(move)

        moved_paths = {m.path for m in moves} | {m.from_path for m in moves}
        for path in paths:
            if path in moved_paths:
                continue
            actions[path] = self._classify(
                path, local.get(path), self._live(remote, path), state.get(path)
            )

        self._isolate_kind_conflicts(actions, moves)
        self._resolve_folder_deletions(actions, moves, local, remote)

        ordered = sorted(list(actions.values()) + moves, key=lambda a: a.sort_key)
        plan = SyncPlan(actions=ordered, scope=self.options.scope)
        logger.debug(f"Planned {len(plan)} action(s): {plan.counts()}")
        return plan

    def _pick_candidate(
        self, dest: str, candidates: list[str], key_match
    ) -> Optional[str]:
        matching = [c for c in candidates if key_match(c)]
        if not matching:
            return None
        return min(matching, key=lambda c: (path_distance(c, dest), c))

    def _match_local_renames(
        self,
        local: TreeSnapshot,
        remote: TreeSnapshot,
        state: Mapping[str, StateEntry],
        local_new: list[str],
        local_missing: list[str],
    ) -> list[SyncAction]:
        """Pair new local files with state paths that vanished locally."""
        available = list(local_missing)
        moves = []
        for dest in local_new:
            entry = local.entries[dest]
            if not entry.checksum or not available:
                continue
            src = self._pick_candidate(
                dest,
                available,
                lambda c: state[c].checksum == entry.checksum and state[c].size == entry.size,
            )
            if src is None:
                continue
            available.remove(src)
            moves.append(
                SyncAction(
                    type=ActionType.MOVE,
                    path=dest,
                    from_path=src,
                    target=Side.REMOTE,
                    reason="Renamed locally",
                    local=entry,
                    remote=self._live(remote, src),
                    state=state[src],
                )
            )
        return moves

    def _match_remote_renames(
        self,
        local: TreeSnapshot,
        remote: TreeSnapshot,
        state: Mapping[str, StateEntry],
        remote_new: list[str],
        remote_missing: list[str],
    ) -> list[SyncAction]:
        """Pair new remote files with state paths that vanished remotely.

        Identical remote IDs are paired first, then identical content.
        """
        available = list(remote_missing)
        pairs: dict[str, str] = {}

        for dest in remote_new:
            entry = remote.entries[dest]
            src = self._pick_candidate(
                dest, available, lambda c: state[c].remote_id == entry.remote_id
            )
            if src is not None:
                available.remove(src)
                pairs[dest] = src

        for dest in remote_new:
            if dest in pairs or not available:
                continue
            entry = remote.entries[dest]
            if not entry.checksum:
                continue
            src = self._pick_candidate(
                dest,
                available,
                lambda c: state[c].checksum == entry.checksum and state[c].size == entry.size,
            )
            if src is not None:
                available.remove(src)
                pairs[dest] = src

        actions = []
        for dest, src in sorted(pairs.items()):
            entry = remote.get(dest)
            actions.append(
                SyncAction(
                    type=ActionType.MOVE,
                    path=dest,
                    from_path=src,
                    target=Side.LOCAL,
                    reason="Renamed remotely",
                    local=local.get(src),
                    remote=entry,
                    state=state[src],
                )
            )
            if self._remote_changed(entry, state[src]):
                # The moved local file still holds the old content
                actions.append(
                    SyncAction(
                        type=ActionType.DOWNLOAD,
                        path=dest,
                        reason="Renamed and changed remotely",
                        remote=entry,
                    )
                )
        return actions

    def _classify(
        self,
        path: str,
        loc: Optional[TreeEntry],
        rem: Optional[TreeEntry],
        st: Optional[StateEntry],
    ) -> SyncAction:
        """Classify a path that is not part of a move."""

        def action(action_type: ActionType, reason: str, **kwargs) -> SyncAction:
            return SyncAction(
                type=action_type, path=path, reason=reason,
                local=loc, remote=rem, state=st, **kwargs,
            )

        def noop(reason: str, change: StateChange = StateChange.KEEP) -> SyncAction:
            return action(ActionType.NO_OP, reason, state_change=change)

        def conflict(reason: str) -> SyncAction:
            if (
                self.options.force
                and loc is not None and rem is not None
                and loc.is_file and rem.is_file
            ):
                if not self.options.allows_local_changes:
                    return noop(f"{reason}; remote version not applied (upload only)")
                return action(ActionType.DOWNLOAD, f"{reason}; forced remote version", forced=True)
            return action(ActionType.CONFLICT, reason)

        def upload(reason: str) -> SyncAction:
            return action(ActionType.UPLOAD, reason, new_revision=self.options.new_revision)

        def download(reason: str) -> SyncAction:
            if not self.options.allows_local_changes:
                return noop(f"{reason}; not applied (upload only)")
            return action(ActionType.DOWNLOAD, reason)

        def remote_new_entry(new: TreeEntry) -> SyncAction:
            if not self.options.allows_local_changes:
                return noop("New remote entry not applied (upload only)")
            if self.options.no_remote_new:
                return noop("New remote entry not applied (no remote new)")
            if new.is_folder:
                return action(ActionType.CREATE_LOCAL_FOLDER, "New remote folder")
            return action(ActionType.DOWNLOAD, "New remote file")

        # Kind changes cannot be reconciled automatically
        kinds = {e.kind for e in (loc, rem, st) if e is not None}
        if len(kinds) > 1:
            return action(ActionType.CONFLICT, KIND_CONFLICT_REASON)

        if st is None:
            if loc is None and rem is None:
                return noop("Only in the remote trash")
            if rem is None:
                if loc.is_folder:
                    return action(ActionType.CREATE_REMOTE_FOLDER, "New local folder")
                return upload("New local file")
            if loc is None:
                return remote_new_entry(rem)
            if loc.is_folder or self._same_content(loc, rem):
                return noop("Identical on both sides", StateChange.RECORD)
            return conflict("Created on both sides with different content")

        if loc is None and rem is None:
            return noop("Deleted on both sides", StateChange.DROP)

        if loc is None:
            if self._remote_changed(rem, st):
                return download("Deleted locally but changed remotely")
            return action(ActionType.DELETE_REMOTE, "Deleted locally")

        if rem is None:
            if self._local_changed(loc, st):
                return upload("Deleted remotely but changed locally")
            if not self.options.allows_local_changes:
                return noop("Deleted remotely; not applied (upload only)")
            return action(ActionType.DELETE_LOCAL, "Deleted remotely")

        local_changed = self._local_changed(loc, st)
        remote_changed = self._remote_changed(rem, st)
        if not local_changed and not remote_changed:
            return noop("Unchanged", StateChange.RECORD)
        if local_changed and not remote_changed:
            return upload("Changed locally")
        if remote_changed and not local_changed:
            return download("Changed remotely")
        if self._same_content(loc, rem):
            return noop("Changed identically on both sides", StateChange.RECORD)
        return conflict("Changed on both sides")

    def _isolate_kind_conflicts(
        self, actions: dict[str, SyncAction], moves: list[SyncAction]
    ) -> None:
        """Turn every change below a file/folder conflict into a conflict.

        One side holds a file where the other holds a folder, so nothing
        can be created, moved or deleted inside that path until the user
        resolves it.
        """
        prefixes = [
            path + "/"
            for path, a in actions.items()
            if a.type == ActionType.CONFLICT and a.reason == KIND_CONFLICT_REASON
        ]
        if not prefixes:
            return

        def inside(path: Optional[str]) -> Optional[str]:
            if path is None:
                return None
            for prefix in prefixes:
                if path.startswith(prefix):
                    return prefix[:-1]
            return None

        def blocked(a: SyncAction, parent: str) -> SyncAction:
            return SyncAction(
                type=ActionType.CONFLICT,
                path=a.path,
                reason=f"Inside {parent}, which is a file on one side and a folder on the other",
                local=a.local,
                remote=a.remote,
                state=a.state,
            )

        for path, a in list(actions.items()):
            parent = inside(path)
            if parent is not None and a.type != ActionType.NO_OP:
                actions[path] = blocked(a, parent)

        for move in list(moves):
            parent = inside(move.path) or inside(move.from_path)
            if parent is None:
                continue
            moves.remove(move)
            if move.path not in actions:
                actions[move.path] = blocked(move, parent)

    def _resolve_folder_deletions(
        self,
        actions: dict[str, SyncAction],
        moves: list[SyncAction],
        local: TreeSnapshot,
        remote: TreeSnapshot,
    ) -> None:
        """Collapse folder deletions or turn them into re-creations.

        A folder is only deleted when everything below it is deleted on the
        same side; the descendants' actions are then folded into the folder
        action. Otherwise the folder is re-created on the side that lost it.
        """
        move_dests = {m.path for m in moves}
        folder_deletes = sorted(
            (
                a for a in actions.values()
                if a.type in (ActionType.DELETE_LOCAL, ActionType.DELETE_REMOTE)
                and a.state is not None and a.state.is_folder
            ),
            key=lambda a: a.path.count("/"),
            reverse=True,
        )

        for folder_action in folder_deletes:
            folder = folder_action.path
            prefix = folder + "/"
            same_side = folder_action.type
            blocked = any(dest.startswith(prefix) for dest in move_dests)
            blocked = blocked or any(
                s.startswith(prefix) for s in local.skipped | remote.skipped
            )
            descendants = [p for p in actions if p.startswith(prefix)]
            for p in descendants:
                child = actions[p]
                if child.type == same_side:
                    continue
                if child.type == ActionType.NO_OP and child.state_change == StateChange.DROP:
                    continue
                blocked = True
                break

            if blocked:
                if same_side == ActionType.DELETE_REMOTE:
                    actions[folder] = SyncAction(
                        type=ActionType.CREATE_LOCAL_FOLDER, path=folder,
                        reason="Deleted locally but still has remote content",
                        remote=folder_action.remote, state=folder_action.state,
                    )
                else:
                    actions[folder] = SyncAction(
                        type=ActionType.CREATE_REMOTE_FOLDER, path=folder,
                        reason="Deleted remotely but still has local content",
                        local=folder_action.local, state=folder_action.state,
                    )
                continue

            if descendants:
                for p in descendants:
                    del actions[p]
                folder_action.reason = (
                    f"{folder_action.reason} ({len(descendants)} item(s) inside)"
                )
