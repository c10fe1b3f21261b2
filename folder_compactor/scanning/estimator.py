import logging
from pathlib import Path
from typing import List, Optional

import zstandard as zstd

from .. import config
from ..runs import CancellationToken


class ZstdCompressibilityEstimator:
    """
    Estimates compressed/original ratio with a fast zstd pass.

    zstd is only a proxy for the on-disk algorithms (XPRESS/LZX/LZNT1); the
    numbers are comparable between files, not a prediction of exact savings.
    """

    def __init__(self, level: int = config.ESTIMATOR_LEVEL, whole_file_cap: int = config.WHOLE_FILE_ESTIMATE_CAP):
        self.level = level
        self.whole_file_cap = whole_file_cap

    def estimate_ratio(self,
                       path: Path,
                       size_bytes: int,
                       sample_block_count: int = config.SAMPLE_BLOCK_COUNT,
                       sample_block_size: int = config.SAMPLE_BLOCK_SIZE,
                       token: Optional[CancellationToken] = None) -> float:
        """
        Strategy:
        1. size <= whole_file_cap -> compress the whole file (exact small-file ratio).
        2. Otherwise sample Start + Middle + End blocks and compare summed sizes.
        Unreadable or empty files yield 1.0 (assume no gain).
        """
        if size_bytes <= 0:
            return 1.0

        try:
            if size_bytes <= self.whole_file_cap:
                data = Path(path).read_bytes()
                if not data:
                    return 1.0
                return self._clamp(len(self._compress(data)) / len(data))

            return self._sampled_ratio(Path(path), size_bytes, sample_block_count, sample_block_size, token)
        except OSError as e:
            logging.warning(f"Cannot read {path} for estimation: {e}")
            return 1.0

    def _sampled_ratio(self,
                       path: Path,
                       size_bytes: int,
                       block_count: int,
                       block_size: int,
                       token: Optional[CancellationToken]) -> float:
        block_size = max(config.MIN_SAMPLE_BLOCK_SIZE, block_size)
        positions = sample_offsets(size_bytes, max(1, block_count), block_size)

        total_read = 0
        total_compressed = 0
        with open(path, 'rb') as f:
            for pos in positions:
                if token is not None:
                    token.raise_if_cancelled()
                f.seek(pos)
                block = f.read(block_size)
                if not block:
                    continue
                total_read += len(block)
                total_compressed += len(self._compress(block))

        if total_read <= 0:
            return 1.0
        return self._clamp(total_compressed / total_read)

    def _compress(self, data: bytes) -> bytes:
        return zstd.ZstdCompressor(level=self.level).compress(data)

    @staticmethod
    def _clamp(ratio: float) -> float:
        # Incompressible data comes out slightly larger because of framing
        return min(1.0, max(ratio, 1e-6))


def sample_offsets(size_bytes: int, block_count: int, block_size: int) -> List[int]:
    """Start, middle and end offsets (deduplicated, in file order)."""
    positions = [0]
    if block_count >= 2:
        positions.append(max(0, size_bytes // 2 - block_size // 2))
    if block_count >= 3:
        positions.append(max(0, size_bytes - block_size))

    seen = set()
    ordered = []
    for p in positions:
        if p not in seen:
            seen.add(p)
            ordered.append(p)
    return ordered
