"""Entry descriptor: canonical snapshot of one filesystem entry"""

import mimetypes
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from file_storage.paths import basename, normalize

UNKNOWN_SPACE = -1


class EntryKind(StrEnum):
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"


@dataclass(frozen=True, slots=True)
class EntryDescriptor:
    """
    Immutable description of a file, directory or link on some backend.

    ``path`` is backend-relative, forward-slash and rooted. ``modified_at``
    of zero means the backend did not report a timestamp.
    """

    name: str
    path: str
    size: int = 0
    modified_at: float = 0.0
    kind: EntryKind = EntryKind.FILE
    permissions: str = ""
    content_type: str = ""
    link_target: str | None = None

    @property
    def is_dir(self) -> bool:
        return self.kind == EntryKind.DIRECTORY

    @property
    def modified(self) -> datetime | None:
        if not self.modified_at:
            return None
        return datetime.fromtimestamp(self.modified_at, tz=UTC)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "modified_at": self.modified_at,
            "kind": str(self.kind),
            "permissions": self.permissions,
            "content_type": self.content_type,
            "link_target": self.link_target,
        }


def make_entry(
    path: str,
    *,
    size: int = 0,
    modified_at: float | datetime | None = None,
    kind: EntryKind = EntryKind.FILE,
    permissions: str = "",
    content_type: str | None = None,
    link_target: str | None = None,
) -> EntryDescriptor:
    """Build a descriptor from adapter-native values, filling the best-effort fields."""
    rooted = normalize(path)
    if isinstance(modified_at, datetime):
        modified_at = modified_at.timestamp()
    if content_type is None:
        content_type = guess_content_type(rooted) if kind == EntryKind.FILE else ""
    return EntryDescriptor(
        name=basename(rooted),
        path=rooted,
        size=max(int(size or 0), 0),
        modified_at=float(modified_at or 0.0),
        kind=kind,
        permissions=permissions,
        content_type=content_type,
        link_target=link_target,
    )


def guess_content_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or "application/octet-stream"


@dataclass(frozen=True, slots=True)
class SpaceInfo:
    """Available/total bytes; ``UNKNOWN_SPACE`` when the backend cannot tell."""

    available: int = UNKNOWN_SPACE
    total: int = UNKNOWN_SPACE
    details: dict = field(default_factory=dict)

    @property
    def known(self) -> bool:
        return self.total != UNKNOWN_SPACE

    def to_dict(self) -> dict:
        return {"available": self.available, "total": self.total, **self.details}
