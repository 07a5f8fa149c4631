"""Options controlling a sync run."""

from dataclasses import dataclass

from ..utils import DEFAULT_MAX_WORKERS, normalize_scope


@dataclass
class SyncOptions:
    """Toggles passed from the command line into the sync engine.

    Examples:
        >>> options = SyncOptions(scope="/docs/", force=True)
        >>> options.scope
        'docs'
    """

    scope: str = ""
    """Single subdirectory to sync ("" for the whole tree)"""

    force: bool = False
    """Resolve conflicts by downloading the remote version"""

    upload_only: bool = False
    """Never change local files because of remote changes"""

    no_remote_new: bool = False
    """Do not download files that were never seen locally"""

    new_revision: bool = False
    """Ask the remote to keep a new revision for every updated file"""

    dry_run: bool = False
    """Only plan, do not apply anything or persist state"""

    upload_speed: int = 0
    """Upload limit in bytes per second (0 = unlimited)"""

    download_speed: int = 0
    """Download limit in bytes per second (0 = unlimited)"""

    max_workers: int = DEFAULT_MAX_WORKERS
    """Parallel workers for hashing and transfers"""

    trust_mtime: bool = True
    """Treat files with unchanged size and mtime as unchanged without hashing"""

    def __post_init__(self) -> None:
        self.scope = normalize_scope(self.scope)
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if self.upload_speed < 0 or self.download_speed < 0:
            raise ValueError("Speed limits must not be negative")

    @property
    def allows_local_changes(self) -> bool:
        """Whether remote changes may be applied to the local tree."""
        return not self.upload_only
