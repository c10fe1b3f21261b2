"""
Capability interfaces for the engine's collaborators.

The concrete implementations live in scanning/, compact/ and database/;
tests substitute deterministic fakes for the filesystem, subprocess and
persistence boundaries by implementing these protocols.
"""
import uuid
from pathlib import Path
from typing import Callable, List, Optional, Protocol

from .models import (
    CompactQueryResult,
    CompactRunOptions,
    CompactRunResult,
    CompressionAlgorithm,
    CompressionProgress,
    FolderAnalysisResult,
    OperationRecord,
    ScanOptions,
    VolumeCompressionInfo,
)
from .runs import CancellationToken

ProgressCallback = Callable[[CompressionProgress], None]


class VolumeInfoProvider(Protocol):
    def get_compression_info(self, path: str) -> VolumeCompressionInfo: ...


class AllocationMeasurer(Protocol):
    def cluster_size(self, path: str) -> int: ...

    def size_on_disk(self, path: str, logical_size: int, cluster_size: int = 0) -> int: ...

    def directory_size_on_disk(self, root: str) -> int: ...


class CompressibilityEstimator(Protocol):
    def estimate_ratio(self,
                       path: Path,
                       size_bytes: int,
                       sample_block_count: int,
                       sample_block_size: int,
                       token: Optional[CancellationToken] = None) -> float: ...


class FolderScanner(Protocol):
    def scan(self,
             root: str,
             options: ScanOptions,
             progress: Optional[ProgressCallback] = None,
             token: Optional[CancellationToken] = None) -> FolderAnalysisResult: ...


class CompressionRunner(Protocol):
    def compress(self,
                 directory: str,
                 algorithm: CompressionAlgorithm,
                 options: CompactRunOptions,
                 progress: Optional[ProgressCallback] = None,
                 token: Optional[CancellationToken] = None) -> CompactRunResult: ...

    def uncompress(self,
                   directory: str,
                   options: CompactRunOptions,
                   progress: Optional[ProgressCallback] = None,
                   token: Optional[CancellationToken] = None) -> CompactRunResult: ...

    def query(self, directory: str, token: Optional[CancellationToken] = None) -> CompactQueryResult: ...


class OperationJournal(Protocol):
    def initialize(self) -> None: ...

    def add(self, record: OperationRecord) -> None: ...

    def update(self, record: OperationRecord) -> None: ...

    def get_recent(self, take: int) -> List[OperationRecord]: ...

    def get_by_id(self, op_id: uuid.UUID) -> Optional[OperationRecord]: ...

    def get_unfinished(self) -> List[OperationRecord]: ...


class OutputObserver(Protocol):
    """Receives tool stdout lines; returns a progress update when the line means something."""

    def observe(self, line: str) -> Optional[CompressionProgress]: ...
