"""Core sync engine orchestrating a single sync run."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from rich.progress import Progress, SpinnerColumn, TextColumn

from ..exceptions import LocalIOError
from ..output import OutputFormatter
from ..utils import format_size
from .executor import ActionExecutor, ExecutionReport
from .ignore import load_ignore_file
from .operations import ProgressCallback, SyncOperations
from .options import SyncOptions
from .ratelimit import RateLimiter
from .reconciler import ActionType, Reconciler, SyncPlan
from .scanner import LocalTreeScanner, RemoteTreeScanner
from .state import StateStore

logger = logging.getLogger(__name__)

_PLAN_LINES = [
    (ActionType.CREATE_REMOTE_FOLDER, "  + Create remote folder: {} folder(s)"),
    (ActionType.CREATE_LOCAL_FOLDER, "  + Create local folder: {} folder(s)"),
    (ActionType.MOVE, "  → Move/rename: {} item(s)"),
    (ActionType.UPLOAD, "  ↑ Upload: {} file(s)"),
    (ActionType.DOWNLOAD, "  ↓ Download: {} file(s)"),
    (ActionType.DELETE_LOCAL, "  ✗ Delete local (to .trash): {} item(s)"),
    (ActionType.DELETE_REMOTE, "  ✗ Delete remote (to trash): {} item(s)"),
]

_PLAN_STAT_KEYS = {
    ActionType.UPLOAD: "uploads",
    ActionType.DOWNLOAD: "downloads",
    ActionType.MOVE: "moves",
    ActionType.CREATE_REMOTE_FOLDER: "folders_created",
    ActionType.CREATE_LOCAL_FOLDER: "folders_created",
    ActionType.DELETE_LOCAL: "deletes_local",
    ActionType.DELETE_REMOTE: "deletes_remote",
    ActionType.CONFLICT: "conflicts",
    ActionType.NO_OP: "skips",
}


@dataclass
class SyncResult:
    """Everything a sync run produced."""

    plan: SyncPlan
    report: Optional[ExecutionReport] = None
    """None for dry runs"""
    warnings: list[str] = field(default_factory=list)
    """Entries skipped while scanning"""
    dry_run: bool = False

    @property
    def conflicts(self) -> list[str]:
        return [a.path for a in self.plan.conflicts]

    def stats(self) -> dict[str, int]:
        """Applied actions for real runs, planned actions for dry runs."""
        if self.report is not None:
            return self.report.stats()
        stats = {
            "uploads": 0,
            "downloads": 0,
            "moves": 0,
            "folders_created": 0,
            "deletes_local": 0,
            "deletes_remote": 0,
            "conflicts": 0,
            "skips": 0,
            "failed": 0,
        }
        for action in self.plan:
            stats[_PLAN_STAT_KEYS[action.type]] += 1
        return stats


class SyncEngine:
    """Runs one sync of a local root against the remote drive.

    Steps: load ignore rules and state, scan both trees, hash the files
    the reconciler asks for, plan, then (unless dry run) execute the plan
    and persist the state.
    """

    def __init__(
        self,
        client,
        output: Optional[OutputFormatter] = None,
        root_folder_id: str = "root",
    ):
        """Initialize sync engine.

        Args:
            client: Remote drive (``DriveClient`` or compatible)
            output: Output formatter for displaying progress/status
            root_folder_id: Remote folder mapped to the sync root
        """
        self.client = client
        self.output = output or OutputFormatter()
        self.root_folder_id = root_folder_id

    def sync(
        self,
        root: Path,
        options: Optional[SyncOptions] = None,
        ignore_lines: Optional[Iterable[str]] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> SyncResult:
        """Synchronize ``root`` with the remote drive.

        Args:
            root: Local sync root
            options: Sync options
            ignore_lines: Extra ignore rules appended after .griveignore
            progress_callback: Optional byte progress callback for transfers

        Returns:
            SyncResult with plan, execution report and warnings

        Raises:
            LocalIOError: If the sync root cannot be read
            RemoteQueryError: If the remote tree cannot be listed
            DriveAuthenticationError: If the access token is rejected

        Examples:
            >>> engine = SyncEngine(client)
            >>> result = engine.sync(Path("/home/user/gdrive"), SyncOptions(dry_run=True))
            >>> print(f"Would upload {result.stats()['uploads']} files")
        """
        options = options or SyncOptions()
        if not root.exists():
            raise LocalIOError(f"Sync root does not exist: {root}", "")
        if not root.is_dir():
            raise LocalIOError(f"Sync root is not a directory: {root}", "")

        if not self.output.quiet:
            self.output.info(f"Syncing: {root}")
            if options.scope:
                self.output.info(f"Subdirectory: {options.scope}")
            if options.dry_run:
                self.output.info("Dry run: No changes will be made")
            self.output.print("")

        matcher = load_ignore_file(root, ignore_lines)
        state = StateStore.for_root(root).load()

        local_scanner = LocalTreeScanner(root, matcher, max_workers=options.max_workers)
        remote_scanner = RemoteTreeScanner(self.client, matcher, root_id=self.root_folder_id)

        # Step 1: Scan both trees (remote failures abort before planning)
        start = time.time()
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
            disable=self.output.quiet,
        ) as progress:
            task = progress.add_task("Scanning local and remote trees...", total=None)
            with ThreadPoolExecutor(max_workers=2) as executor:
                local_future = executor.submit(local_scanner.scan, options.scope)
                remote_future = executor.submit(remote_scanner.scan, options.scope)
                remote = remote_future.result()
                local = local_future.result()
            progress.update(
                task,
                description=f"Found {len(local)} local and {len(remote)} remote item(s)",
            )
        logger.debug(f"Scanning took {time.time() - start:.2f}s")

        if state.root_id is not None and state.root_id != remote.root_id:
            message = (
                f"Sync state belongs to remote folder {state.root_id}, "
                f"not {remote.root_id}; starting from scratch"
            )
            logger.warning(message)
            self.output.warning(message)
            state = StateStore(state.state_file)
        state.root_id = remote.root_id

        # Step 2: Hash only what the decision needs, then plan
        prior = state.snapshot(options.scope)
        reconciler = Reconciler(options, matcher)
        needed = reconciler.required_checksums(local, remote, prior)
        local_scanner.compute_checksums(local, needed)
        plan = reconciler.plan(local, remote, prior)

        result = SyncResult(
            plan=plan,
            warnings=local.warnings + remote.warnings,
            dry_run=options.dry_run,
        )

        # Step 3: Display plan
        self._display_sync_plan(plan, options.dry_run)

        if options.dry_run:
            self._display_summary(result)
            return result

        # Step 4: Execute and persist, even when interrupted by a fatal error
        operations = SyncOperations(
            self.client,
            root,
            upload_limiter=RateLimiter(options.upload_speed),
            download_limiter=RateLimiter(options.download_speed),
        )
        executor = ActionExecutor(
            operations,
            state,
            remote,
            max_workers=options.max_workers,
            progress_callback=progress_callback,
        )
        try:
            result.report = executor.apply(plan)
        finally:
            state.save()

        # Step 5: Display summary
        self._display_summary(result)
        return result

    def _display_sync_plan(self, plan: SyncPlan, dry_run: bool) -> None:
        """Display sync plan to user."""
        if self.output.quiet:
            return

        counts = plan.counts()
        self.output.info("Sync plan:")
        for action_type, line in _PLAN_LINES:
            if counts[action_type.value] > 0:
                self.output.info(line.format(counts[action_type.value]))
        if counts[ActionType.NO_OP.value] > 0:
            self.output.info(f"  = Unchanged: {counts[ActionType.NO_OP.value]} item(s)")

        upload_bytes = sum(a.local.size for a in plan.of_type(ActionType.UPLOAD) if a.local)
        download_bytes = sum(
            a.remote.size for a in plan.of_type(ActionType.DOWNLOAD) if a.remote
        )
        if upload_bytes or download_bytes:
            self.output.info(
                f"  Data: {format_size(upload_bytes)} up, {format_size(download_bytes)} down"
            )

        if dry_run:
            for action in plan.changes:
                self.output.info(f"    {action}")

        if plan.conflicts:
            self.output.warning(f"  ⚠ Conflicts: {len(plan.conflicts)} item(s)")
            self.output.print("")
            self.output.warning("Conflict details:")
            for action in plan.conflicts:
                self.output.warning(f"  {action.path}: {action.reason}")

        self.output.print("")

    def _display_summary(self, result: SyncResult) -> None:
        """Display sync summary."""
        for warning in result.warnings:
            self.output.warning(f"Skipped {warning}")

        report = result.report
        if report is not None:
            for failure in report.failed:
                self.output.warning(
                    f"Deferred to next run: {failure.action.describe()} ({failure.error})"
                )

        if self.output.quiet:
            return

        stats = result.stats()
        self.output.print("")
        if result.dry_run:
            self.output.success("Dry run complete!")
        else:
            self.output.success("Sync complete!")

        total_actions = sum(
            stats[key]
            for key in (
                "uploads",
                "downloads",
                "moves",
                "folders_created",
                "deletes_local",
                "deletes_remote",
            )
        )
        if total_actions > 0:
            self.output.info(f"Total actions: {total_actions}")
            for key, label in (
                ("folders_created", "Folders created"),
                ("moves", "Moved"),
                ("uploads", "Uploaded"),
                ("downloads", "Downloaded"),
                ("deletes_local", "Deleted locally"),
                ("deletes_remote", "Deleted remotely"),
            ):
                if stats[key] > 0:
                    self.output.info(f"  {label}: {stats[key]}")
        elif not stats["failed"] and not stats["conflicts"]:
            self.output.info("No changes needed - everything is in sync!")

        if stats["failed"] > 0:
            self.output.warning(f"Failed: {stats['failed']} (will be retried next run)")
        if stats["conflicts"] > 0:
            self.output.warning(
                f"⚠  {stats['conflicts']} conflict(s) were skipped. "
                "Please resolve conflicts manually."
            )
