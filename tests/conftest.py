"""Shared fixtures for pygrive tests."""

import hashlib
import itertools
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pytest

from pygrive.exceptions import DriveNotFoundError
from pygrive.models import FOLDER_MIME_TYPE, DriveEntry


@dataclass
class FakeItem:
    id: str
    name: str
    parent_id: Optional[str]
    is_folder: bool
    content: bytes = b""
    version: int = 1
    trashed: bool = False
    modified: float = 1_700_000_000.0


class FakeDrive:
    """In-memory remote drive implementing the client interface used by sync."""

    def __init__(self, root_id: str = "root"):
        self.root_id = root_id
        self.items: dict[str, FakeItem] = {}
        self._ids = itertools.count(1)
        self.calls: list[tuple] = []
        self.fail_uploads: dict[str, Exception] = {}
        self.fail_downloads: dict[str, Exception] = {}
        self.list_error: Optional[Exception] = None
        self.closed = False

    # Test helpers

    def _new_id(self) -> str:
        return f"id{next(self._ids):04d}"

    def _folder_for(self, path: str) -> str:
        parent = self.root_id
        for name in [p for p in path.split("/") if p]:
            found = self._child(parent, name)
            if found is None:
                found = FakeItem(self._new_id(), name, parent, True)
                self.items[found.id] = found
            parent = found.id
        return parent

    def _child(self, parent_id: str, name: str) -> Optional[FakeItem]:
        for item in sorted(self.items.values(), key=lambda i: i.id):
            if item.parent_id == parent_id and item.name == name and not item.trashed:
                return item
        return None

    def add_file(self, path: str, content: bytes) -> FakeItem:
        parent_path, _, name = path.rpartition("/")
        parent_id = self._folder_for(parent_path)
        item = FakeItem(self._new_id(), name, parent_id, False, content)
        self.items[item.id] = item
        return item

    def add_folder(self, path: str) -> str:
        return self._folder_for(path)

    def path_of(self, item: FakeItem) -> str:
        parts = [item.name]
        parent = item.parent_id
        while parent != self.root_id:
            folder = self.items[parent]
            parts.append(folder.name)
            parent = folder.parent_id
        return "/".join(reversed(parts))

    def find(self, path: str) -> Optional[FakeItem]:
        parent = self.root_id
        item = None
        for name in path.split("/"):
            item = self._child(parent, name)
            if item is None:
                return None
            parent = item.id
        return item

    def live_files(self) -> dict[str, bytes]:
        result = {}
        for item in self.items.values():
            if item.is_folder or self._in_trash(item):
                continue
            result[self.path_of(item)] = item.content
        return result

    def _in_trash(self, item: FakeItem) -> bool:
        current: Optional[FakeItem] = item
        while current is not None:
            if current.trashed:
                return True
            current = self.items.get(current.parent_id or "")
        return False

    def _entry(self, item: FakeItem, path: str = "") -> DriveEntry:
        return DriveEntry(
            id=item.id,
            name=item.name,
            mime_type=FOLDER_MIME_TYPE if item.is_folder else "text/plain",
            path=path,
            parent_id=item.parent_id,
            md5=None if item.is_folder else hashlib.md5(item.content).hexdigest(),
            size=0 if item.is_folder else len(item.content),
            modified=item.modified,
            version=str(item.version),
            trashed=item.trashed,
        )

    def _get(self, remote_id: str) -> FakeItem:
        if remote_id not in self.items:
            raise DriveNotFoundError("Resource not found", 404)
        return self.items[remote_id]

    # Client interface

    def close(self) -> None:
        self.closed = True

    def list_tree(self, scope: str = "", root_id: str = "root"):
        self.calls.append(("list_tree", scope))
        if self.list_error is not None:
            raise self.list_error
        folder_id = root_id
        path = ""
        for name in [p for p in scope.split("/") if p]:
            folder = self._child(folder_id, name)
            if folder is None:
                return
            path = f"{path}/{name}" if path else name
            yield self._entry(folder, path)
            folder_id = folder.id
        yield from self._walk(folder_id, path)

    def _walk(self, folder_id: str, prefix: str):
        children = [i for i in self.items.values() if i.parent_id == folder_id]
        for item in sorted(children, key=lambda i: i.id):
            path = f"{prefix}/{item.name}" if prefix else item.name
            yield self._entry(item, path)
            if item.is_folder and not item.trashed:
                yield from self._walk(item.id, path)

    def upload(
        self,
        name,
        content,
        size=None,
        remote_id=None,
        parent_id=None,
        modified=None,
        mime_type="application/octet-stream",
        new_revision=False,
    ) -> DriveEntry:
        self.calls.append(("upload", name, remote_id, new_revision))
        data = b"".join(content)
        if name in self.fail_uploads:
            raise self.fail_uploads[name]
        if remote_id is None:
            item = FakeItem(self._new_id(), name, parent_id, False, data)
            self.items[item.id] = item
        else:
            item = self._get(remote_id)
            item.content = data
            item.version += 1
        if modified is not None:
            item.modified = modified
        return self._entry(item)

    @contextmanager
    def download(self, remote_id: str, chunk_size: int = 1024):
        self.calls.append(("download", remote_id))
        if remote_id in self.fail_downloads:
            raise self.fail_downloads[remote_id]
        item = self._get(remote_id)
        content = item.content
        yield iter([content[i : i + chunk_size] for i in range(0, len(content), chunk_size)])

    def create_folder(self, parent_id: str, name: str) -> DriveEntry:
        self.calls.append(("create_folder", parent_id, name))
        item = FakeItem(self._new_id(), name, parent_id, True)
        self.items[item.id] = item
        return self._entry(item)

    def trash(self, remote_id: str) -> DriveEntry:
        self.calls.append(("trash", remote_id))
        item = self._get(remote_id)
        item.trashed = True
        item.version += 1
        return self._entry(item)

    def move(self, remote_id: str, new_parent_id: str, new_name: str) -> DriveEntry:
        self.calls.append(("move", remote_id, new_parent_id, new_name))
        item = self._get(remote_id)
        item.parent_id = new_parent_id
        item.name = new_name
        item.version += 1
        return self._entry(item)


@pytest.fixture
def fake_drive():
    """Provide an empty in-memory drive."""
    return FakeDrive()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
