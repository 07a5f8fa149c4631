"""Data models for Google Drive API responses."""

from dataclasses import dataclass, replace
from typing import Any, Optional

from .utils import parse_iso_timestamp

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
GOOGLE_APPS_MIME_PREFIX = "application/vnd.google-apps."

# Fields requested for every file resource
FILE_FIELDS = (
    "id,name,mimeType,md5Checksum,size,modifiedTime,version,trashed,parents"
)


@dataclass
class DriveEntry:
    """A file or folder resource on Google Drive."""

    id: str
    name: str
    mime_type: str
    path: str = ""
    """Path relative to the sync root (filled in while walking the tree)"""
    parent_id: Optional[str] = None
    md5: Optional[str] = None
    size: int = 0
    modified: Optional[float] = None
    """Last modification time (Unix timestamp)"""
    version: Optional[str] = None
    """Monotonic resource version, used as the revision tag"""
    trashed: bool = False

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    @property
    def is_native_document(self) -> bool:
        """Google Docs/Sheets/... have no binary content to sync."""
        return self.mime_type.startswith(GOOGLE_APPS_MIME_PREFIX) and not self.is_folder

    @classmethod
    def from_api_response(
        cls, data: dict[str, Any], path: str = "", parent_id: Optional[str] = None
    ) -> "DriveEntry":
        """Create a DriveEntry from a Drive v3 file resource.

        Args:
            data: File resource dictionary
            path: Relative path of the entry
            parent_id: Parent folder ID (defaults to the first listed parent)

        Returns:
            DriveEntry instance
        """
        parents = data.get("parents") or []
        if parent_id is None and parents:
            parent_id = parents[0]
        version = data.get("version")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", "application/octet-stream"),
            path=path,
            parent_id=parent_id,
            md5=data.get("md5Checksum"),
            size=int(data.get("size") or 0),
            modified=parse_iso_timestamp(data.get("modifiedTime")),
            version=str(version) if version is not None else None,
            trashed=bool(data.get("trashed", False)),
        )

    def with_path(self, path: str) -> "DriveEntry":
        return replace(self, path=path)
