"""CLI progress display for file transfers.

This module provides a Rich-based byte progress bar fed by the
per-chunk callbacks of the action executor.
"""

import threading
from typing import Optional

from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
    TransferSpeedColumn,
)

from .sync.operations import ProgressCallback


class TransferProgressDisplay:
    """Rich-based progress display for uploads and downloads.

    One bar is shown per file in flight; it is removed when the file
    completes. Callbacks may arrive from several worker threads.
    """

    def __init__(self) -> None:
        """Initialize the progress display."""
        self._progress: Optional[Progress] = None
        self._active = False
        self._tasks: dict[str, TaskID] = {}
        self._lock = threading.Lock()
        self.files_completed = 0

    def create_callback(self) -> ProgressCallback:
        """Create a progress callback that updates this display.

        Returns:
            Callable accepting (path, bytes_done, total_bytes)
        """
        return self._handle_progress

    def _handle_progress(self, path: str, done: int, total: int) -> None:
        """Handle a progress update from a transfer.

        Args:
            path: Relative path of the file being transferred
            done: Bytes transferred so far
            total: Total bytes of the file
        """
        if not self._active:
            return

        with self._lock:
            if self._progress is None:
                # Started on the first transfer so scanning output is not covered
                self._progress = self._create_progress()
                self._progress.__enter__()
            task = self._tasks.get(path)
            if task is None:
                task = self._progress.add_task(path, total=total or None)
                self._tasks[path] = task
            self._progress.update(task, completed=done)
            if total and done >= total:
                self._progress.remove_task(task)
                del self._tasks[path]
                self.files_completed += 1

    def _create_progress(self) -> Progress:
        return Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeElapsedColumn(),
            refresh_per_second=4,
        )

    def __enter__(self) -> "TransferProgressDisplay":
        """Enter context manager - accept progress updates."""
        self._active = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager - stop progress display."""
        self._active = False
        if self._progress is not None:
            self._progress.__exit__(exc_type, exc_val, exc_tb)
            self._progress = None
            self._tasks = {}


def run_sync_with_progress(engine, root, options, ignore_lines=None):
    """Run a sync with a Rich transfer progress display.

    The progress bar is only shown while files are actually transferred,
    never for dry runs.

    Args:
        engine: SyncEngine instance
        root: Local sync root
        options: SyncOptions
        ignore_lines: Extra ignore rules

    Returns:
        SyncResult
    """
    if options.dry_run:
        return engine.sync(root, options, ignore_lines=ignore_lines)

    with TransferProgressDisplay() as display:
        return engine.sync(
            root,
            options,
            ignore_lines=ignore_lines,
            progress_callback=display.create_callback(),
        )
