from datetime import datetime, timedelta, UTC

import pytest

from folder_compactor.models import CompressionAlgorithm, OperationRecord, OperationStatus
from folder_compactor.throughput import estimate_throughput, fallback_throughput, history_samples

MIB = 1024 * 1024
T0 = datetime(2024, 1, 1, tzinfo=UTC)


def _op(mib_per_sec, algorithm=CompressionAlgorithm.LZX, seconds=100, **kwargs):
    fields = dict(
        path="/x",
        algorithm=algorithm,
        started_at=T0,
        finished_at=T0 + timedelta(seconds=seconds),
        before_bytes=int(mib_per_sec * MIB * seconds),
        status=OperationStatus.COMPLETED,
    )
    fields.update(kwargs)
    return OperationRecord(**fields)


@pytest.mark.parametrize("algorithm,expected", [
    (CompressionAlgorithm.LZX, 15 * MIB),
    (CompressionAlgorithm.NTFS, 30 * MIB),
    (CompressionAlgorithm.XPRESS8K, 25 * MIB),
])
def test_fallback_without_history(algorithm, expected):
    assert estimate_throughput([], algorithm) == expected
    assert fallback_throughput(algorithm) == expected


def test_median_of_same_algorithm_when_enough_samples():
    records = [
        _op(10), _op(40), _op(20),
        _op(500, algorithm=CompressionAlgorithm.NTFS),
    ]
    assert estimate_throughput(records, CompressionAlgorithm.LZX) == pytest.approx(20 * MIB)


def test_all_algorithms_used_when_too_few_same_samples():
    records = [
        _op(10),
        _op(30, algorithm=CompressionAlgorithm.NTFS),
        _op(50, algorithm=CompressionAlgorithm.NTFS),
    ]
    assert estimate_throughput(records, CompressionAlgorithm.LZX) == pytest.approx(30 * MIB)


def test_noise_and_irrelevant_records_are_ignored():
    records = [
        _op(0.5),                                   # below the noise floor
        _op(100, is_rollback=True),
        _op(100, status=OperationStatus.FAILED),
        _op(100, finished_at=None),
        _op(100, before_bytes=0),
    ]
    assert history_samples(records) == []
    assert estimate_throughput(records, CompressionAlgorithm.LZX) == 15 * MIB


def test_elapsed_time_is_at_least_one_second():
    rec = _op(1, seconds=0, before_bytes=50 * MIB)
    assert history_samples([rec]) == [50 * MIB]
