"""Execution of sync plans.

Actions run phase by phase in plan order: folder creations and moves one
at a time (parents before children), then transfers and deletions on a
bounded worker pool. Every action is isolated: a failure is logged,
recorded in the report and leaves the path's state entry untouched so the
next run re-evaluates it.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Optional, TypeVar

from ..exceptions import DriveAuthenticationError, DriveTransientError, GriveError
from ..utils import DEFAULT_MAX_RETRIES, DEFAULT_MAX_WORKERS, DEFAULT_RETRY_DELAY, parent_path
from .operations import ProgressCallback, SyncOperations
from .reconciler import ActionType, Side, StateChange, SyncAction, SyncPlan
from .scanner import EntryKind, TreeSnapshot
from .state import StateEntry, StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Phases whose actions are independent of each other
_PARALLEL_PHASES = {2, 3}

_STAT_KEYS = {
    ActionType.UPLOAD: "uploads",
    ActionType.DOWNLOAD: "downloads",
    ActionType.MOVE: "moves",
    ActionType.CREATE_REMOTE_FOLDER: "folders_created",
    ActionType.CREATE_LOCAL_FOLDER: "folders_created",
    ActionType.DELETE_LOCAL: "deletes_local",
    ActionType.DELETE_REMOTE: "deletes_remote",
}


class ActionStatus(str, Enum):
    """Lifecycle of a planned action."""

    PLANNED = "planned"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    """Deferred to the next run"""


@dataclass
class ActionResult:
    """Outcome of one executed action."""

    action: SyncAction
    status: ActionStatus = ActionStatus.PLANNED
    error: Optional[str] = None
    elapsed: float = 0.0


@dataclass
class ExecutionReport:
    """Summary of a plan execution."""

    applied: list[ActionResult] = field(default_factory=list)
    failed: list[ActionResult] = field(default_factory=list)
    conflicts: list[SyncAction] = field(default_factory=list)
    skipped: list[SyncAction] = field(default_factory=list)
    """NO_OP actions (state bookkeeping only)"""

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def failed_paths(self) -> list[str]:
        return [r.action.path for r in self.failed]

    def stats(self) -> dict[str, int]:
        """Counts of applied actions by category."""
        stats = {
            "uploads": 0,
            "downloads": 0,
            "moves": 0,
            "folders_created": 0,
            "deletes_local": 0,
            "deletes_remote": 0,
            "conflicts": len(self.conflicts),
            "skips": len(self.skipped),
            "failed": len(self.failed),
        }
        for result in self.applied:
            key = _STAT_KEYS.get(result.action.type)
            if key:
                stats[key] += 1
        return stats


class ActionExecutor:
    """Applies a SyncPlan to the local tree and the remote drive.

    State entries are created, updated or removed as each action
    succeeds; the caller persists the store afterwards.

    Examples:
        >>> executor = ActionExecutor(operations, state, remote_snapshot)
        >>> report = executor.apply(plan)
        >>> report.stats()["uploads"]
        3
    """

    def __init__(
        self,
        operations: SyncOperations,
        state: StateStore,
        remote: TreeSnapshot,
        max_workers: int = DEFAULT_MAX_WORKERS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        """Initialize executor.

        Args:
            operations: Local and remote operations
            state: State store updated as actions succeed
            remote: Remote snapshot the plan was computed from
            max_workers: Parallel workers for transfers and deletions
            max_retries: Retries for transient remote failures during transfers
            retry_delay: Initial backoff delay in seconds
            progress_callback: Optional byte progress callback for transfers
        """
        self.operations = operations
        self.state = state
        self.max_workers = max(1, max_workers)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.progress_callback = progress_callback

        self._folder_ids: dict[str, str] = {"": remote.root_id or "root"}
        for entry in remote.folders():
            if not entry.trashed and entry.remote_id:
                self._folder_ids[entry.path] = entry.remote_id
        self._folder_lock = threading.RLock()
        self._failed_lock = threading.Lock()
        self._failed_folders: set[str] = set()

    # ------------------------------------------------------------------
    # Plan execution
    # ------------------------------------------------------------------

    def apply(self, plan: SyncPlan) -> ExecutionReport:
        """Execute all actions of a plan.

        Args:
            plan: Plan produced by the reconciler

        Returns:
            ExecutionReport

        Raises:
            DriveAuthenticationError: If the remote rejects the access token
        """
        report = ExecutionReport(conflicts=plan.conflicts)
        start = time.time()

        phases: dict[int, list[SyncAction]] = {}
        for action in plan.executable:
            if action.type == ActionType.NO_OP:
                self._apply_noop(action)
                report.skipped.append(action)
            else:
                phases.setdefault(action.phase, []).append(action)

        for phase in sorted(phases):
            actions = phases[phase]
            if phase in _PARALLEL_PHASES and self.max_workers > 1 and len(actions) > 1:
                results = self._run_parallel(actions)
            else:
                results = [self._run(action) for action in actions]
            for result in results:
                if result.status == ActionStatus.APPLIED:
                    report.applied.append(result)
                else:
                    report.failed.append(result)

        logger.debug(
            f"Executed {len(report.applied) + len(report.failed)} action(s) "
            f"in {time.time() - start:.2f}s ({len(report.failed)} failed)"
        )
        return report

    def _run_parallel(self, actions: list[SyncAction]) -> list[ActionResult]:
        logger.debug(f"Executing {len(actions)} actions with {self.max_workers} workers")
        results: list[ActionResult] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(self._run, action): action for action in actions}
            try:
                for future in as_completed(futures):
                    results.append(future.result())
            except DriveAuthenticationError:
                executor.shutdown(wait=True, cancel_futures=True)
                raise
        # Keep plan order in the report
        order = {id(action): i for i, action in enumerate(actions)}
        results.sort(key=lambda r: order[id(r.action)])
        return results

    def _run(self, action: SyncAction) -> ActionResult:
        """Run one action, isolating any failure."""
        result = ActionResult(action=action, status=ActionStatus.APPLYING)
        start = time.time()
        try:
            blocked = self._blocked_by(action.path)
            if blocked is not None:
                raise GriveError(f"parent folder {blocked} could not be created")
            self._dispatch(action)
            result.status = ActionStatus.APPLIED
            logger.debug(f"Applied {action}")
        except DriveAuthenticationError:
            raise
        except GriveError as e:
            result.status = ActionStatus.FAILED
            result.error = str(e)
            logger.warning(f"Failed to {action.type.value.replace('_', ' ')} {action.describe()}: {e}")
            if action.type in (ActionType.CREATE_LOCAL_FOLDER, ActionType.CREATE_REMOTE_FOLDER):
                with self._failed_lock:
                    self._failed_folders.add(action.path)
        result.elapsed = time.time() - start
        return result

    def _blocked_by(self, path: str) -> Optional[str]:
        with self._failed_lock:
            if not self._failed_folders:
                return None
            parent = parent_path(path)
            while parent:
                if parent in self._failed_folders:
                    return parent
                parent = parent_path(parent)
        return None

    def _dispatch(self, action: SyncAction) -> None:
        handlers: dict[ActionType, Callable[[SyncAction], None]] = {
            ActionType.CREATE_REMOTE_FOLDER: self._create_remote_folder,
            ActionType.CREATE_LOCAL_FOLDER: self._create_local_folder,
            ActionType.MOVE: self._move,
            ActionType.UPLOAD: self._upload,
            ActionType.DOWNLOAD: self._download,
            ActionType.DELETE_LOCAL: self._delete_local,
            ActionType.DELETE_REMOTE: self._delete_remote,
        }
        handlers[action.type](action)

    def _with_retries(self, func: Callable[[], T], path: str) -> T:
        """Retry a streaming transfer on server overload or unavailability."""
        attempt = 0
        while True:
            try:
                return func()
            except DriveTransientError as e:
                if attempt >= self.max_retries:
                    raise
                delay = self.retry_delay * (2**attempt)
                logger.debug(
                    f"Transfer of {path} failed (attempt {attempt + 1}/"
                    f"{self.max_retries + 1}), retrying in {delay:.1f}s: {e}"
                )
                time.sleep(delay)
                attempt += 1

    # ------------------------------------------------------------------
    # Remote folder resolution
    # ------------------------------------------------------------------

    def _folder_id(self, folder: str) -> str:
        """Return the remote ID of a folder, creating missing ancestors."""
        with self._folder_lock:
            if folder in self._folder_ids:
                return self._folder_ids[folder]
            parent_id = self._folder_id(parent_path(folder))
            name = folder.rsplit("/", 1)[-1]
            entry = self.operations.create_remote_folder(parent_id, name)
            logger.debug(f"Created missing remote folder {folder}")
            self._folder_ids[folder] = entry.id
            self.state.put(
                StateEntry(
                    path=folder,
                    kind=EntryKind.FOLDER,
                    remote_id=entry.id,
                    revision=entry.version,
                )
            )
            return entry.id

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _create_remote_folder(self, action: SyncAction) -> None:
        with self._folder_lock:
            folder_id = self._folder_ids.get(action.path)
            revision = None
            if folder_id is None:
                parent_id = self._folder_id(parent_path(action.path))
                entry = self.operations.create_remote_folder(
                    parent_id, action.path.rsplit("/", 1)[-1]
                )
                folder_id = entry.id
                revision = entry.version
                self._folder_ids[action.path] = folder_id
        self.state.put(
            StateEntry(
                path=action.path,
                kind=EntryKind.FOLDER,
                mtime=action.local.mtime if action.local else None,
                remote_id=folder_id,
                revision=revision,
            )
        )

    def _create_local_folder(self, action: SyncAction) -> None:
        mtime = self.operations.create_local_folder(action.path)
        remote = action.remote
        self.state.put(
            StateEntry(
                path=action.path,
                kind=EntryKind.FOLDER,
                mtime=mtime,
                remote_id=remote.remote_id if remote else None,
                revision=remote.revision if remote else None,
            )
        )

    def _move(self, action: SyncAction) -> None:
        if action.from_path is None or action.state is None:
            raise GriveError(f"Move to {action.path} has no source")
        if action.target == Side.REMOTE:
            local = action.local
            if local is None:
                raise GriveError(f"{action.path} is missing locally")
            remote_id = action.remote.remote_id if action.remote else action.state.remote_id
            if not remote_id:
                raise GriveError(f"{action.from_path} has no remote identity")
            parent_id = self._folder_id(parent_path(action.path))
            entry = self.operations.move_remote(
                remote_id, parent_id, action.path.rsplit("/", 1)[-1]
            )
            new_entry = StateEntry(
                path=action.path,
                kind=EntryKind.FILE,
                checksum=local.checksum or action.state.checksum,
                size=local.size,
                mtime=local.mtime,
                remote_id=entry.id,
                revision=entry.version or action.state.revision,
            )
        else:
            remote = action.remote
            if remote is None:
                raise GriveError(f"{action.path} is missing remotely")
            st = self.operations.move_local(action.from_path, action.path)
            # The local file keeps its old bytes; a remote edit is only
            # recorded once it has been downloaded
            same_content = (
                remote.checksum is not None and remote.checksum == action.state.checksum
            )
            new_entry = StateEntry(
                path=action.path,
                kind=EntryKind.FILE,
                checksum=action.state.checksum,
                size=st.st_size,
                mtime=st.st_mtime,
                remote_id=remote.remote_id,
                revision=remote.revision if same_content else action.state.revision,
            )
        self.state.remove(action.from_path)
        self.state.put(new_entry)

    def _upload_needed(self, action: SyncAction) -> bool:
        """Pre-upload check: skip the transfer if the remote already has the bytes.

        New files and files whose size changed are trusted to differ.
        """
        local, remote, st = action.local, action.remote, action.state
        if st is None or local is None or local.size != st.size:
            return True
        if remote is None or not local.checksum:
            return True
        return not (remote.checksum == local.checksum and remote.size == local.size)

    def _upload(self, action: SyncAction) -> None:
        local, remote = action.local, action.remote
        if local is None:
            raise GriveError(f"{action.path} is missing locally")
        if remote is not None and not self._upload_needed(action):
            logger.debug(f"Remote already has the content of {action.path}")
            self.state.put(StateEntry.from_entries(local, remote, action.path))
            return

        remote_id = remote.remote_id if remote is not None else None
        parent_id = None if remote_id else self._folder_id(parent_path(action.path))
        result = self._with_retries(
            lambda: self.operations.upload_file(
                action.path,
                remote_id=remote_id,
                parent_id=parent_id,
                new_revision=action.new_revision,
                progress_callback=self.progress_callback,
            ),
            action.path,
        )
        self.state.put(
            StateEntry(
                path=action.path,
                kind=EntryKind.FILE,
                checksum=result.checksum,
                size=result.size,
                mtime=result.mtime,
                remote_id=result.remote_id,
                revision=result.revision,
            )
        )

    def _download(self, action: SyncAction) -> None:
        remote = action.remote
        if remote is None:
            raise GriveError(f"{action.path} is missing remotely")
        if action.forced and action.local is not None:
            # Keep the local edits recoverable
            self.operations.trash_local(action.path)
        result = self._with_retries(
            lambda: self.operations.download_file(
                action.path, remote, progress_callback=self.progress_callback
            ),
            action.path,
        )
        self.state.put(
            StateEntry(
                path=action.path,
                kind=EntryKind.FILE,
                checksum=result.checksum,
                size=result.size,
                mtime=result.mtime,
                remote_id=result.remote_id,
                revision=result.revision,
            )
        )

    def _delete_local(self, action: SyncAction) -> None:
        self.operations.trash_local(action.path)
        self.state.remove_tree(action.path)

    def _delete_remote(self, action: SyncAction) -> None:
        remote_id = None
        if action.remote is not None:
            remote_id = action.remote.remote_id
        elif action.state is not None:
            remote_id = action.state.remote_id
        if not remote_id:
            raise GriveError(f"{action.path} has no remote identity")
        self.operations.trash_remote(remote_id)
        self.state.remove_tree(action.path)
        with self._folder_lock:
            self._folder_ids.pop(action.path, None)

    def _apply_noop(self, action: SyncAction) -> None:
        if action.state_change == StateChange.DROP:
            self.state.remove(action.path)
        elif action.state_change == StateChange.RECORD:
            entry = StateEntry.from_entries(action.local, action.remote, action.path)
            if entry.checksum is None and action.state is not None:
                entry = replace(entry, checksum=action.state.checksum)
            self.state.put(entry)
