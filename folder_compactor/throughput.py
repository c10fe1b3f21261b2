"""
Assumed compression throughput for ETA display, derived from journal history.
"""
import logging
from typing import Iterable, List

from . import config
from .models import CompressionAlgorithm, OperationRecord, OperationStatus


def fallback_throughput(algorithm: CompressionAlgorithm) -> float:
    """Conservative constant used when there is no usable history."""
    return float(config.FALLBACK_THROUGHPUT_BPS.get(algorithm.name, config.DEFAULT_FALLBACK_THROUGHPUT_BPS))


def history_samples(records: Iterable[OperationRecord], algorithm=None) -> List[float]:
    """
    Bytes/sec of completed compress runs (rollbacks excluded). Samples below
    the noise floor are dropped.
    """
    samples = []
    for r in records:
        if r.status != OperationStatus.COMPLETED or r.is_rollback:
            continue
        if r.before_bytes <= 0 or r.started_at is None or r.finished_at is None:
            continue
        if algorithm is not None and r.algorithm != algorithm:
            continue
        seconds = max(1.0, (r.finished_at - r.started_at).total_seconds())
        bps = r.before_bytes / seconds
        if bps > config.THROUGHPUT_NOISE_FLOOR_BPS:
            samples.append(bps)
    return samples


def estimate_throughput(records: Iterable[OperationRecord], algorithm: CompressionAlgorithm) -> float:
    """
    Median throughput of recent history, preferring same-algorithm samples
    when there are enough of them.
    """
    records = list(records)

    same = history_samples(records, algorithm)
    if len(same) >= config.THROUGHPUT_MIN_SAME_ALGORITHM_SAMPLES:
        logging.debug(f"Throughput from {len(same)} {algorithm.name} samples")
        return _median(same)

    every = history_samples(records)
    if every:
        logging.debug(f"Throughput from {len(every)} samples (any algorithm)")
        return _median(every)

    logging.debug(f"No throughput history; using fallback for {algorithm.name}")
    return fallback_throughput(algorithm)


def _median(values: List[float]) -> float:
    ordered = sorted(values)
    return ordered[len(ordered) // 2]
