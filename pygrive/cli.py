"""CLI interface for pygrive."""

import logging
from pathlib import Path
from typing import Any, Optional

import click
from click.core import ParameterSource

from . import __version__
from .api import DriveClient
from .cli_progress import run_sync_with_progress
from .config import load_config, save_access_token
from .exceptions import (
    DriveAPIError,
    DriveAuthenticationError,
    GriveConfigError,
    LocalIOError,
    RemoteQueryError,
)
from .output import OutputFormatter
from .sync import SyncEngine, SyncOptions

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(verbose: bool, debug: bool, log_file: Optional[str]) -> None:
    """Configure logging for a run.

    The console shows warnings by default, info with ``--verbose`` and
    debug with ``--debug``. A log file always captures debug messages.
    """
    if debug:
        console_level = logging.DEBUG
    elif verbose:
        console_level = logging.INFO
    else:
        console_level = logging.WARNING

    logging.basicConfig(level=console_level, format=LOG_FORMAT, datefmt="%H:%M:%S")
    for handler in logging.getLogger().handlers:
        handler.setLevel(console_level)

    package_logger = logging.getLogger("pygrive")
    package_logger.setLevel(console_level)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(file_handler)
        package_logger.setLevel(logging.DEBUG)
        package_logger.debug(f"pygrive version {__version__}")


@click.command()
@click.option(
    "--path",
    "-p",
    default=".",
    show_default=True,
    help="Path to the local sync root",
)
@click.option("--dir", "-s", "subdir", help="Single subdirectory to sync")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Resolve conflicts by downloading the remote version",
)
@click.option(
    "--upload-only",
    "-u",
    is_flag=True,
    help="Do not download anything, only upload local changes",
)
@click.option(
    "--no-remote-new",
    "-n",
    is_flag=True,
    help="Download only files that already exist locally",
)
@click.option(
    "--new-rev", is_flag=True, help="Create new remote revisions for updated files"
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Only show what would be synced, without syncing",
)
@click.option(
    "--upload-speed",
    "-U",
    type=click.IntRange(min=0),
    default=None,
    help="Limit upload speed in kbytes per second",
)
@click.option(
    "--download-speed",
    "-D",
    type=click.IntRange(min=0),
    default=None,
    help="Limit download speed in kbytes per second",
)
@click.option(
    "--progress-bar",
    "-P",
    is_flag=True,
    help="Show a progress bar for uploads and downloads",
)
@click.option(
    "--jobs",
    "-j",
    type=click.IntRange(min=1),
    default=None,
    help="Number of parallel workers for hashing and transfers",
)
@click.option(
    "--access-token",
    envvar="GRIVE_ACCESS_TOKEN",
    help="OAuth2 access token for Google Drive",
)
@click.option("--verbose", "-V", is_flag=True, help="Enable verbose messages")
@click.option("--debug", "-d", is_flag=True, help="Enable debug messages (implies -V)")
@click.option("--log", "-l", "log_file", help="Write a debug log to this file")
@click.option(
    "--log-http",
    "log_http",
    help="Log all HTTP responses in this file for debugging",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", "json_output", is_flag=True, help="Output results in JSON format")
@click.version_option(version=__version__, prog_name="pygrive")
@click.pass_context
def main(
    ctx: Any,
    path: str,
    subdir: Optional[str],
    force: bool,
    upload_only: bool,
    no_remote_new: bool,
    new_rev: bool,
    dry_run: bool,
    upload_speed: Optional[int],
    download_speed: Optional[int],
    progress_bar: bool,
    jobs: Optional[int],
    access_token: Optional[str],
    verbose: bool,
    debug: bool,
    log_file: Optional[str],
    log_http: Optional[str],
    quiet: bool,
    json_output: bool,
) -> None:
    """pygrive - keep a local folder in sync with Google Drive.

    Each run compares the local tree, the remote tree and the state saved
    by the previous run, then uploads, downloads, renames and trashes
    what changed. Conflicting edits are reported and left alone.

    Examples:
        pygrive -p ~/gdrive                  # Sync the whole drive
        pygrive -p ~/gdrive -s docs          # Sync only the docs folder
        pygrive -p ~/gdrive --dry-run        # Preview changes
        pygrive -p ~/gdrive -U 500 -D 2000   # Limit speeds (kB/s)
    """
    out = OutputFormatter(json_output=json_output, quiet=quiet)
    configure_logging(verbose or debug, debug, log_file)

    root = Path(path).expanduser()
    if not root.is_dir():
        out.error(f"Path is not a directory: {path}")
        ctx.exit(1)

    try:
        config = load_config(
            root,
            access_token=access_token,
            upload_speed=upload_speed,
            download_speed=download_speed,
            max_workers=jobs,
        )
        token = config.require_access_token()
        if ctx.get_parameter_source("access_token") == ParameterSource.COMMANDLINE:
            save_access_token(root, token)
    except (GriveConfigError, OSError) as e:
        out.error(str(e))
        ctx.exit(1)
        return  # Unreachable, but helps type checker

    try:
        options = SyncOptions(
            scope=subdir or "",
            force=force,
            upload_only=upload_only,
            no_remote_new=no_remote_new,
            new_revision=new_rev,
            dry_run=dry_run,
            upload_speed=config.upload_speed * 1000,
            download_speed=config.download_speed * 1000,
            max_workers=config.max_workers,
            trust_mtime=config.trust_mtime,
        )
    except ValueError as e:
        out.error(str(e))
        ctx.exit(1)
        return

    client = DriveClient(
        token,
        api_url=config.api_url,
        upload_url=config.upload_url,
        http_log=Path(log_http) if log_http else None,
    )
    engine = SyncEngine(client, out, root_folder_id=config.root_folder_id)

    try:
        if progress_bar and not quiet and not json_output:
            result = run_sync_with_progress(engine, root, options, config.ignore)
        else:
            result = engine.sync(root, options, ignore_lines=config.ignore)
    except KeyboardInterrupt:
        out.warning("\nSync cancelled by user")
        ctx.exit(130)
        return
    except DriveAuthenticationError as e:
        out.error(f"{e}. Set a fresh access token with --access-token.")
        ctx.exit(1)
        return
    except RemoteQueryError as e:
        out.error(f"{e}. Nothing was changed.")
        ctx.exit(1)
        return
    except (LocalIOError, DriveAPIError) as e:
        out.error(str(e))
        ctx.exit(1)
        return
    finally:
        client.close()

    if out.json_output:
        out.output_json(
            {
                "dry_run": result.dry_run,
                "stats": result.stats(),
                "conflicts": result.conflicts,
                "failed": result.report.failed_paths if result.report else [],
                "warnings": result.warnings,
            }
        )

    logger.info("Finished!")


if __name__ == "__main__":
    main()
