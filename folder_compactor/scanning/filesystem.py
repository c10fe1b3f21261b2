import os
import logging
import stat
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .. import config
from ..abstractions import AllocationMeasurer, CompressibilityEstimator, VolumeInfoProvider
from ..exceptions import OperationCancelled, ScanError
from ..models import CompressionProgress, FileAnalysisInfo, FolderAnalysisResult, ScanOptions
from ..runs import CancellationToken
from .disksize import DiskSizeMeasurer, is_reparse_point
from .estimator import ZstdCompressibilityEstimator
from .volume import VolumeProbe

FILE_ATTRIBUTE_COMPRESSED = 0x800


class DirectoryScanner:
    def __init__(self,
                 estimator: Optional[CompressibilityEstimator] = None,
                 volume_probe: Optional[VolumeInfoProvider] = None,
                 measurer: Optional[AllocationMeasurer] = None):
        self.estimator = estimator or ZstdCompressibilityEstimator()
        self.volume_probe = volume_probe or VolumeProbe()
        self.measurer = measurer or DiskSizeMeasurer()

    def scan(self,
             root: str,
             options: Optional[ScanOptions] = None,
             progress=None,
             token: Optional[CancellationToken] = None) -> FolderAnalysisResult:
        """
        Walks root and returns the aggregate analysis.

        Per-file and per-directory errors are logged and skipped. Cancellation
        raises OperationCancelled; there is no partial result.
        """
        if root is None or not str(root).strip():
            raise ScanError("Root path is required.")

        options = options or ScanOptions()
        token = token or CancellationToken()
        root = os.path.abspath(str(root))

        # 1. Volume capability (non-fatal)
        volume = self.volume_probe.get_compression_info(root)
        result = FolderAnalysisResult(
            path=root,
            is_ntfs=volume.is_ntfs,
            supports_compression=volume.supports_per_file_compression,
            warning=volume.warning,
        )
        if volume.warning:
            logging.warning(f"{root}: {volume.warning}")

        if not os.path.isdir(root):
            result.warning = "Directory does not exist."
            return result

        # 2. Enumerate
        entries = list(self._iter_files(root, options, token))
        total_bytes = sum(st.st_size for _, st in entries)
        cluster = self.measurer.cluster_size(root)
        logging.info(f"Analyzing {len(entries)} files under {root}")

        # 3. Measure & estimate
        files: List[FileAnalysisInfo] = []
        processed_bytes = 0
        t0 = time.perf_counter()

        for path, st in entries:
            token.raise_if_cancelled()

            info = self._analyze_file(root, path, st, cluster, options, token)
            if info is None:
                continue

            files.append(info)
            processed_bytes += info.size

            if progress:
                elapsed = time.perf_counter() - t0
                large = info.size > options.large_file_threshold
                progress(CompressionProgress(
                    current_file=path,
                    processed_bytes=processed_bytes,
                    total_bytes=total_bytes,
                    processed_files=len(files),
                    total_files=len(entries),
                    speed_mbps=(processed_bytes / config.MIB) / elapsed if elapsed > 0 else 0.0,
                    status_message="Sampling large file..." if large else "Analyzing...",
                ))

        # 4. Aggregate
        result.files = files
        result.file_count = len(files)
        result.total_size = sum(f.size for f in files)
        result.total_size_on_disk = sum(f.size_on_disk for f in files)
        result.compressed_file_count = sum(1 for f in files if f.is_compressed)
        result.estimated_savings = sum(f.estimated_savings for f in files if f.is_compressible)

        valid = [f.estimated_ratio for f in files if f.estimated_ratio > 0]
        result.average_ratio = sum(valid) / len(valid) if valid else 1.0

        logging.info(
            f"Analysis complete: {result.file_count} files, "
            f"{result.total_size_on_disk} bytes on disk, ~{result.estimated_savings} bytes saveable."
        )
        return result

    def _analyze_file(self,
                      root: str,
                      path: str,
                      st: os.stat_result,
                      cluster: int,
                      options: ScanOptions,
                      token: CancellationToken) -> Optional[FileAnalysisInfo]:
        """Measures one file. Returns None when the file has to be skipped."""
        try:
            size = st.st_size
            size_on_disk = self.measurer.size_on_disk(path, size, cluster)
            attrs = getattr(st, 'st_file_attributes', 0)
            ext = os.path.splitext(path)[1].lower()

            info = FileAnalysisInfo(
                path=path,
                relative_path=os.path.relpath(path, root),
                size=size,
                size_on_disk=size_on_disk,
                last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
                is_compressed=bool(attrs & FILE_ATTRIBUTE_COMPRESSED),
                category=categorize(path),
            )

            # Excluded extensions are never estimated (cost control)
            if ext in options.excluded_extensions:
                info.skip_reason = f"Excluded extension: {ext}"
                return info

            try:
                ratio = self.estimator.estimate_ratio(
                    Path(path), size, options.sample_block_count, options.sample_block_size, token
                )
            except OperationCancelled:
                raise
            except Exception as e:
                logging.warning(f"Estimator failed for {path}: {e}")
                info.estimated_ratio = 1.0
                info.skip_reason = "Estimator error"
                return info

            info.estimated_ratio = ratio
            info.estimated_savings = int(max(0, size - size * ratio))

            savings_ratio = 1.0 - ratio
            if savings_ratio < options.min_savings_ratio:
                info.skip_reason = f"Low estimated savings ({savings_ratio:.0%})"
            else:
                info.is_compressible = True
            return info

        except OSError as e:
            logging.warning(f"Failed to measure {path}: {e}")
            return None

    def _iter_files(self,
                    root: str,
                    options: ScanOptions,
                    token: CancellationToken) -> Iterator[Tuple[str, os.stat_result]]:
        """
        Depth-first walker using os.scandir and an explicit stack.
        Yields (path, stat) for every file that survives the safety rules.
        """
        no_follow = options.do_not_follow_reparse_points

        if no_follow and _path_is_reparse(root):
            logging.warning(f"Skipping reparse point directory (symlink/junction) {root}")
            return

        visited = {os.path.realpath(root)}
        stack = [root]
        while stack:
            token.raise_if_cancelled()
            current = stack.pop()

            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError as e:
                logging.warning(f"No access to directory {current}: {e}")
                continue

            # Sort for stable traversal order
            entries.sort(key=lambda e: e.name.lower())

            dirs = []
            for e in entries:
                token.raise_if_cancelled()
                try:
                    reparse = is_reparse_point(e)
                    if reparse and no_follow:
                        if e.is_dir():
                            logging.warning(f"Skipping reparse point directory (symlink/junction) {e.path}")
                        else:
                            logging.debug(f"Skipping reparse point file {e.path}")
                        continue

                    if e.is_dir():
                        if is_excluded_folder(e.name, options.excluded_folder_fragments):
                            logging.info(f"Skipping excluded folder {e.path}")
                            continue
                        if reparse:
                            # Following links: never enter the same real directory twice
                            real = os.path.realpath(e.path)
                            if real in visited:
                                logging.warning(f"Skipping already visited link target {e.path} -> {real}")
                                continue
                            visited.add(real)
                        dirs.append(e.path)
                    elif e.is_file():
                        yield e.path, e.stat(follow_symlinks=not no_follow)
                except OSError as err:
                    logging.warning(f"Failed to stat {e.path}: {err}")
                    continue

            # Push dirs to stack (reversed so we process A before Z)
            for d in reversed(dirs):
                stack.append(d)


def is_excluded_folder(name: str, fragments: List[str]) -> bool:
    """
    Matches exclusion fragments against a single directory name, never a full
    path, so an ancestor such as ".../AppData/Local/Temp/..." cannot exclude
    everything below it.
    """
    name_lower = name.lower()
    for fragment in fragments:
        frag = fragment.strip().lower()
        if frag and frag in name_lower:
            return True
    return False


def categorize(path: str) -> str:
    return config.EXT_TO_CATEGORY.get(os.path.splitext(path)[1].lower(), 'unknown')


def _path_is_reparse(path: str) -> bool:
    try:
        if os.path.islink(path):
            return True
        isjunction = getattr(os.path, 'isjunction', None)
        if isjunction and isjunction(path):
            return True
        attrs = getattr(os.lstat(path), 'st_file_attributes', 0)
        return bool(attrs & stat.FILE_ATTRIBUTE_REPARSE_POINT)
    except OSError:
        return False
