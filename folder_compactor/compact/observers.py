"""
Progress observers for the compression tool's stdout.

The tool's per-file output is locale-dependent and undocumented, so anything
derived from it is approximate. Banner or help lines that happen to contain a
path and an extension are counted as files too.
"""
import re
import threading
from typing import Optional

from ..models import CompressionProgress

_EXTENSION_RE = re.compile(r'\.[A-Za-z0-9]{1,8}$')


class NullObserver:
    """Ignores all output (quiet runs, tests)."""

    def observe(self, line: str) -> Optional[CompressionProgress]:
        return None


class PathLineObserver:
    """
    Treats lines containing a path separator and ending in a file extension
    as "the file currently being processed".
    """

    def __init__(self, status_message: str = "Running compact.exe..."):
        self.status_message = status_message
        self.current_file = ""
        self.processed_files = 0
        self._lock = threading.Lock()

    def observe(self, line: str) -> Optional[CompressionProgress]:
        line = line.strip()
        if not line or not looks_like_path(line):
            return None

        with self._lock:
            self.current_file = line
            self.processed_files += 1
            count = self.processed_files

        return CompressionProgress(
            current_file=line,
            processed_files=count,
            status_message=self.status_message,
        )


def looks_like_path(line: str) -> bool:
    if '\\' not in line and '/' not in line:
        return False
    return bool(_EXTENSION_RE.search(line))
