"""Archive engine: zip and tar archives built from and unpacked onto storage backends"""

from archive_module.engine import ArchiveEngine, ArchiveResult
from archive_module.formats import ArchiveFormat, detect_format

__all__ = ["ArchiveEngine", "ArchiveFormat", "ArchiveResult", "detect_format"]
