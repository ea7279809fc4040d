"""Archive formats and detection by file extension"""

from enum import StrEnum

from file_storage import paths
from file_storage.exceptions import Unsupported


class ArchiveFormat(StrEnum):
    ZIP = "zip"
    TAR = "tar"
    TAR_GZ = "tar.gz"

    @property
    def extension(self) -> str:
        return f".{self.value}"

    @property
    def tar_mode(self) -> str:
        return "gz" if self is ArchiveFormat.TAR_GZ else ""

    @classmethod
    def parse(cls, value: "str | ArchiveFormat") -> "ArchiveFormat":
        """Format from a name such as ``zip``, ``tar.gz`` or ``tgz``."""
        if isinstance(value, ArchiveFormat):
            return value
        name = value.strip().lower().lstrip(".")
        name = _ALIASES.get(name, name)
        try:
            return cls(name)
        except ValueError:
            raise Unsupported(f"Unsupported archive format: {value}") from None


_ALIASES = {"tgz": "tar.gz", "targz": "tar.gz"}

_EXTENSIONS = {
    ".zip": ArchiveFormat.ZIP,
    ".tar": ArchiveFormat.TAR,
    ".tar.gz": ArchiveFormat.TAR_GZ,
    ".tgz": ArchiveFormat.TAR_GZ,
}


def detect_format(path: str) -> ArchiveFormat:
    """
    Archive format of ``path`` by extension.

    Raises:
        Unsupported: naming the detected extension
    """
    extension = paths.splitext_lower(path)
    fmt = _EXTENSIONS.get(extension)
    if fmt is None:
        raise Unsupported(f"Unsupported archive format: {extension or '(no extension)'}", path)
    return fmt


def has_extension(path: str, fmt: ArchiveFormat) -> bool:
    return _EXTENSIONS.get(paths.splitext_lower(path)) is fmt


def strip_extension(name: str) -> str:
    """Archive file name without its (possibly double) extension."""
    extension = paths.splitext_lower(name)
    return name[: -len(extension)] if extension else name
