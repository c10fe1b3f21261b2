import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum
from typing import List, Optional, Set

from . import config


class CompressionMode(IntEnum):
    SAFE = 0
    STRONGER = 1


class CompressionAlgorithm(IntEnum):
    NONE = 0
    NTFS = 1
    XPRESS4K = 2
    XPRESS8K = 3
    XPRESS16K = 4
    LZX = 5

    def to_compact_argument(self) -> str:
        """Extra tool argument selecting the algorithm ('' for the default NTFS format)."""
        if self in (CompressionAlgorithm.NONE, CompressionAlgorithm.NTFS):
            return ""
        return f"/EXE:{self.name}"

    @property
    def display_name(self) -> str:
        return _ALGORITHM_DISPLAY_NAMES[self]


_ALGORITHM_DISPLAY_NAMES = {
    CompressionAlgorithm.NONE: "None",
    CompressionAlgorithm.NTFS: "NTFS (Standard)",
    CompressionAlgorithm.XPRESS4K: "XPRESS4K (Fast)",
    CompressionAlgorithm.XPRESS8K: "XPRESS8K (Balanced)",
    CompressionAlgorithm.XPRESS16K: "XPRESS16K (Better)",
    CompressionAlgorithm.LZX: "LZX (Maximum)",
}


class OperationStatus(IntEnum):
    PENDING = 0
    IN_PROGRESS = 1
    COMPLETED = 2
    FAILED = 3
    CANCELLED = 4
    ROLLED_BACK = 5

    @property
    def is_terminal(self) -> bool:
        return self not in (OperationStatus.PENDING, OperationStatus.IN_PROGRESS)


@dataclass
class ScanOptions:
    """
    Knobs for a directory analysis. Defaults come from config.
    """
    do_not_follow_reparse_points: bool = True
    large_file_threshold: int = config.LARGE_FILE_THRESHOLD
    sample_block_count: int = config.SAMPLE_BLOCK_COUNT
    sample_block_size: int = config.SAMPLE_BLOCK_SIZE
    min_savings_ratio: float = config.MIN_SAVINGS_RATIO
    excluded_extensions: Set[str] = field(default_factory=lambda: set(config.DEFAULT_EXCLUDED_EXTENSIONS))
    excluded_folder_fragments: List[str] = field(default_factory=lambda: list(config.DEFAULT_EXCLUDED_FOLDER_FRAGMENTS))

    def __post_init__(self):
        # Extensions compare case-insensitively, always with the leading dot
        normalized = set()
        for ext in self.excluded_extensions:
            ext = ext.strip().lower()
            if not ext:
                continue
            normalized.add(ext if ext.startswith('.') else f'.{ext}')
        self.excluded_extensions = normalized


@dataclass
class FileAnalysisInfo:
    """
    Represents a file measured (and possibly estimated) during a scan.
    """
    path: str
    relative_path: str
    size: int               # logical bytes
    size_on_disk: int       # allocated bytes, what actually matters for free space
    last_modified: datetime
    is_compressed: bool = False
    estimated_ratio: float = 0.0    # compressed/original, 0.0 = not estimated
    estimated_savings: int = 0
    is_compressible: bool = False
    skip_reason: Optional[str] = None
    category: str = 'unknown'


@dataclass
class FolderAnalysisResult:
    path: str
    total_size: int = 0             # informational, the OS decompresses transparently on read
    total_size_on_disk: int = 0     # authoritative for free space
    file_count: int = 0
    compressed_file_count: int = 0
    estimated_savings: int = 0
    average_ratio: float = 1.0
    files: List[FileAnalysisInfo] = field(default_factory=list)
    is_ntfs: bool = False
    supports_compression: bool = False
    warning: Optional[str] = None


@dataclass(frozen=True)
class VolumeCompressionInfo:
    is_ntfs: bool
    supports_per_file_compression: bool
    volume_root: str
    filesystem_name: str
    warning: Optional[str] = None


@dataclass
class CompressionProgress:
    """
    Transient progress snapshot. A percentage of 0 while is_busy is True means
    "indeterminate", not "0% done".
    """
    current_file: str = ""
    processed_bytes: int = 0
    total_bytes: int = 0
    processed_files: int = 0
    total_files: int = 0
    speed_mbps: float = 0.0
    eta: Optional[timedelta] = None
    status_message: Optional[str] = None
    is_busy: bool = True

    @property
    def percentage(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return min(100.0, self.processed_bytes / self.total_bytes * 100)


@dataclass
class CompactRunOptions:
    recursive: bool = True
    continue_on_errors: bool = True     # /I
    force: bool = True                  # /F
    quiet: bool = True                  # /Q; verbose output is unbounded on large trees
    approx_total_bytes: int = 0         # usually the folder's size on disk, for heartbeat ETA
    assumed_throughput_bps: float = 0.0


@dataclass
class CompactRunResult:
    exit_code: int = 0
    started: bool = False
    was_cancelled: bool = False
    stdout: str = ""
    stderr: str = ""
    errors: List[str] = field(default_factory=list)


@dataclass
class CompactQueryResult:
    exit_code: int = 0
    output: str = ""
    compressed_files: Optional[int] = None
    uncompressed_files: Optional[int] = None


@dataclass
class OperationRecord:
    """
    Journal entity for one compress or rollback attempt.
    """
    path: str
    mode: CompressionMode = CompressionMode.SAFE
    algorithm: CompressionAlgorithm = CompressionAlgorithm.NONE
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    before_bytes: int = 0
    after_bytes: int = 0
    status: OperationStatus = OperationStatus.PENDING
    error_message: Optional[str] = None
    is_rollback: bool = False
    original_operation_id: Optional[uuid.UUID] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)

    @property
    def duration(self) -> Optional[timedelta]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    @property
    def saved_bytes(self) -> int:
        if self.before_bytes > 0 and self.after_bytes > 0:
            return self.before_bytes - self.after_bytes
        return 0
