"""Transfer and filesystem operations used by the action executor."""

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional

from ..exceptions import DriveInvalidResponseError, LocalIOError
from ..models import DriveEntry
from ..utils import DEFAULT_CHUNK_SIZE, TRASH_DIR_NAME
from .ratelimit import RateLimiter
from .scanner import TreeEntry

logger = logging.getLogger(__name__)

# progress_callback(path, bytes_done, total_bytes)
ProgressCallback = Callable[[str, int, int], None]


@dataclass
class TransferResult:
    """Outcome of a single upload or download."""

    checksum: str
    """MD5 of the bytes that were transferred"""

    size: int

    mtime: Optional[float]
    """Local mtime after the transfer, None if the file changed meanwhile"""

    remote_id: Optional[str] = None

    revision: Optional[str] = None
    """Remote revision tag after the transfer"""


class SyncOperations:
    """Operations on the local tree and the remote drive.

    Uploads and downloads are streamed in chunks through the rate
    limiters and hashed on the fly, so no file is read twice.
    """

    def __init__(
        self,
        client,
        root: Path,
        upload_limiter: Optional[RateLimiter] = None,
        download_limiter: Optional[RateLimiter] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        """Initialize sync operations.

        Args:
            client: Remote drive (``DriveClient`` or compatible)
            root: Local sync root
            upload_limiter: Shared limiter for uploads
            download_limiter: Shared limiter for downloads
            chunk_size: Read/write size for transfers
        """
        self.client = client
        self.root = root
        self.upload_limiter = upload_limiter or RateLimiter(0)
        self.download_limiter = download_limiter or RateLimiter(0)
        self.chunk_size = chunk_size

    def local_path(self, rel_path: str) -> Path:
        return self.root.joinpath(*rel_path.split("/"))

    @property
    def trash_dir(self) -> Path:
        return self.root / TRASH_DIR_NAME

    # =========================
    # Transfers
    # =========================

    def _read_chunks(
        self,
        path: Path,
        digest,
        rel_path: str,
        total: int,
        progress_callback: Optional[ProgressCallback],
    ) -> Iterator[bytes]:
        done = 0
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(self.chunk_size), b""):
                self.upload_limiter.consume(len(chunk))
                digest.update(chunk)
                done += len(chunk)
                if progress_callback:
                    progress_callback(rel_path, done, total)
                yield chunk

    def upload_file(
        self,
        rel_path: str,
        remote_id: Optional[str] = None,
        parent_id: Optional[str] = None,
        new_revision: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> TransferResult:
        """Upload a local file with its metadata in one request.

        Args:
            rel_path: Relative path of the file
            remote_id: Existing remote file to update, None to create
            parent_id: Remote parent folder for new files
            new_revision: Ask the remote to keep a new revision
            progress_callback: Optional progress callback

        Returns:
            TransferResult with the remote entry and local checksum

        Raises:
            LocalIOError: If the file cannot be read
            DriveAPIError: If the upload request fails
        """
        path = self.local_path(rel_path)
        try:
            before = path.stat()
        except OSError as e:
            raise LocalIOError(f"Cannot read {rel_path}: {e}", rel_path) from e

        digest = hashlib.md5()
        try:
            remote = self.client.upload(
                path.name,
                self._read_chunks(path, digest, rel_path, before.st_size, progress_callback),
                size=before.st_size,
                remote_id=remote_id,
                parent_id=parent_id,
                modified=before.st_mtime,
                new_revision=new_revision,
            )
        except OSError as e:
            raise LocalIOError(f"Cannot read {rel_path}: {e}", rel_path) from e

        checksum = digest.hexdigest()
        if remote.md5 and remote.md5 != checksum:
            raise DriveInvalidResponseError(
                f"Checksum mismatch after uploading {rel_path}"
            )

        mtime: Optional[float] = before.st_mtime
        try:
            after = path.stat()
            if after.st_size != before.st_size or after.st_mtime != before.st_mtime:
                # Modified during upload; force a rehash next run
                logger.warning(f"{rel_path} changed while uploading")
                mtime = None
        except OSError:
            mtime = None
        return TransferResult(
            checksum=checksum,
            size=before.st_size,
            mtime=mtime,
            remote_id=remote.id,
            revision=remote.version,
        )

    def download_file(
        self,
        rel_path: str,
        remote: TreeEntry,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> TransferResult:
        """Download a remote file, replacing the local file atomically.

        The content is written to a temporary file next to the target and
        renamed over it once complete and verified.

        Args:
            rel_path: Relative destination path
            remote: Remote file to download
            progress_callback: Optional progress callback

        Returns:
            TransferResult with the checksum and mtime of the new local file

        Raises:
            LocalIOError: If the file cannot be written
            DriveAPIError: If the download fails or the content is corrupt
        """
        path = self.local_path(rel_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".grive-", suffix=".tmp")
        except OSError as e:
            raise LocalIOError(f"Cannot write {rel_path}: {e}", rel_path) from e

        digest = hashlib.md5()
        done = 0
        try:
            with os.fdopen(fd, "wb") as f:
                with self.client.download(remote.remote_id, chunk_size=self.chunk_size) as chunks:
                    for chunk in chunks:
                        if not chunk:
                            continue
                        self.download_limiter.consume(len(chunk))
                        f.write(chunk)
                        digest.update(chunk)
                        done += len(chunk)
                        if progress_callback:
                            progress_callback(rel_path, done, remote.size)
            checksum = digest.hexdigest()
            if remote.checksum and remote.checksum != checksum:
                raise DriveInvalidResponseError(
                    f"Checksum mismatch while downloading {rel_path}"
                )
            if remote.mtime is not None:
                os.utime(tmp_name, (remote.mtime, remote.mtime))
            os.replace(tmp_name, path)
            st = path.stat()
        except OSError as e:
            raise LocalIOError(f"Cannot write {rel_path}: {e}", rel_path) from e
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)

        return TransferResult(
            checksum=checksum,
            size=st.st_size,
            mtime=st.st_mtime,
            remote_id=remote.remote_id,
            revision=remote.revision,
        )

    # =========================
    # Folders, moves and trash
    # =========================

    def create_local_folder(self, rel_path: str) -> float:
        """Create a local directory (and missing parents).

        Returns:
            Modification time of the directory
        """
        path = self.local_path(rel_path)
        try:
            path.mkdir(parents=True, exist_ok=True)
            return path.stat().st_mtime
        except OSError as e:
            raise LocalIOError(f"Cannot create directory {rel_path}: {e}", rel_path) from e

    def create_remote_folder(self, parent_id: str, name: str) -> DriveEntry:
        return self.client.create_folder(parent_id, name)

    def move_local(self, from_path: str, to_path: str) -> os.stat_result:
        """Rename a local entry.

        Returns:
            stat result of the moved entry

        Raises:
            LocalIOError: If the source is gone or the destination exists
        """
        source = self.local_path(from_path)
        target = self.local_path(to_path)
        try:
            if target.exists():
                raise LocalIOError(f"Cannot move {from_path}: {to_path} already exists", to_path)
            target.parent.mkdir(parents=True, exist_ok=True)
            os.rename(source, target)
            return target.stat()
        except OSError as e:
            raise LocalIOError(f"Cannot move {from_path} to {to_path}: {e}", from_path) from e

    def move_remote(self, remote_id: str, new_parent_id: str, new_name: str) -> DriveEntry:
        return self.client.move(remote_id, new_parent_id, new_name)

    def trash_local(self, rel_path: str) -> Path:
        """Move a local entry into ``<root>/.trash``, never deleting it.

        The relative path is preserved inside the trash. If an entry with
        the same name is already there, a numeric suffix is appended.

        Returns:
            Location of the entry inside the trash
        """
        source = self.local_path(rel_path)
        base = self.trash_dir.joinpath(*rel_path.split("/"))
        target = base
        counter = 1
        while target.exists() or target.is_symlink():
            target = base.with_name(f"{base.name}.{counter}")
            counter += 1
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.rename(source, target)
        except OSError as e:
            raise LocalIOError(f"Cannot move {rel_path} to trash: {e}", rel_path) from e
        logger.debug(f"Moved {rel_path} to {target}")
        return target

    def trash_remote(self, remote_id: str) -> DriveEntry:
        return self.client.trash(remote_id)
