import logging
import os
import sys

import pytest

from folder_compactor import config
from folder_compactor.exceptions import OperationCancelled, ScanError
from folder_compactor.models import ScanOptions
from folder_compactor.runs import CancellationToken
from folder_compactor.scanning import disksize
from folder_compactor.scanning.disksize import DiskSizeMeasurer, round_up_to_cluster
from folder_compactor.scanning.estimator import ZstdCompressibilityEstimator, sample_offsets
from folder_compactor.scanning.filesystem import DirectoryScanner, categorize, is_excluded_folder
from folder_compactor.scanning.volume import VolumeProbe

needs_symlinks = pytest.mark.skipif(sys.platform == "win32", reason="symlink creation needs privileges on Windows")


def _symlink_dir(target, link):
    try:
        os.symlink(target, link, target_is_directory=True)
    except (OSError, NotImplementedError) as e:
        pytest.skip(f"symlinks unavailable: {e}")


# --- Disk size ---

@pytest.mark.parametrize("size,cluster,expected", [
    (0, 4096, 0),
    (-5, 4096, 0),
    (1, 4096, 4096),
    (4096, 4096, 4096),
    (4097, 4096, 8192),
    (100, 0, 100),
])
def test_round_up_to_cluster(size, cluster, expected):
    assert round_up_to_cluster(size, cluster) == expected


def test_size_on_disk_falls_back_to_cluster_then_logical(monkeypatch, tmp_path, caplog):
    p = tmp_path / "f.bin"
    p.write_bytes(b"x" * 10)
    monkeypatch.setattr(disksize, "allocated_size", lambda path: None)

    m = DiskSizeMeasurer()
    with caplog.at_level(logging.DEBUG):
        assert m.size_on_disk(str(p), 10, 4096) == 4096
        assert m.size_on_disk(str(p), 10, 0) == 10

    assert "cluster round-up" in caplog.text
    assert "logical size" in caplog.text


def test_size_on_disk_uses_allocation_when_available(monkeypatch, tmp_path):
    p = tmp_path / "f.bin"
    p.write_bytes(b"x" * 10)
    monkeypatch.setattr(disksize, "allocated_size", lambda path: 8192)

    assert DiskSizeMeasurer().size_on_disk(str(p), 10, 4096) == 8192


@pytest.mark.skipif(sys.platform != "win32", reason="GetCompressedFileSizeW is Windows-only")
def test_allocated_size_ignores_stale_last_error(monkeypatch, tmp_path):
    import ctypes

    class Kernel32:
        # Low word that equals INVALID_FILE_SIZE on success, last error untouched
        def GetCompressedFileSizeW(self, path, high):
            return disksize.INVALID_FILE_SIZE

    monkeypatch.setattr(disksize, "kernel32", Kernel32())
    ctypes.set_last_error(5)

    assert disksize.allocated_size(str(tmp_path)) == disksize.INVALID_FILE_SIZE


@needs_symlinks
def test_directory_size_on_disk_ignores_links(monkeypatch, tmp_path):
    monkeypatch.setattr(disksize, "allocated_size", lambda path: os.path.getsize(path))
    root = tmp_path / "root"
    (root / "sub").mkdir(parents=True)
    (root / "a.bin").write_bytes(b"a" * 100)
    (root / "sub" / "b.bin").write_bytes(b"b" * 50)
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "big.bin").write_bytes(b"c" * 10000)
    _symlink_dir(outside, root / "link")

    assert DiskSizeMeasurer().directory_size_on_disk(str(root)) == 150


# --- Estimator ---

def test_repetitive_text_is_highly_compressible(tmp_path):
    p = tmp_path / "text.txt"
    p.write_bytes(b"AAAAABBBBBCCCCCDDDDDEEEEE\n" * 20000)

    ratio = ZstdCompressibilityEstimator().estimate_ratio(p, p.stat().st_size)
    assert ratio < 0.5


def test_random_data_is_not_compressible(tmp_path):
    p = tmp_path / "random.bin"
    p.write_bytes(os.urandom(2 * 1024 * 1024))

    ratio = ZstdCompressibilityEstimator().estimate_ratio(p, p.stat().st_size)
    assert ratio > 0.85
    assert ratio <= 1.0


def test_large_file_is_sampled(tmp_path):
    p = tmp_path / "big.bin"
    p.write_bytes(b"\0" * (3 * 1024 * 1024))

    est = ZstdCompressibilityEstimator(whole_file_cap=1024 * 1024)
    ratio = est.estimate_ratio(p, p.stat().st_size, sample_block_count=3, sample_block_size=256 * 1024)
    assert 0 < ratio < 0.1


def test_sampling_observes_cancellation(tmp_path):
    p = tmp_path / "big.bin"
    p.write_bytes(b"\0" * (3 * 1024 * 1024))
    token = CancellationToken()
    token.cancel()

    est = ZstdCompressibilityEstimator(whole_file_cap=1024 * 1024)
    with pytest.raises(OperationCancelled):
        est.estimate_ratio(p, p.stat().st_size, 3, 256 * 1024, token)


def test_empty_and_missing_files_assume_no_gain(tmp_path):
    est = ZstdCompressibilityEstimator()
    assert est.estimate_ratio(tmp_path / "missing.bin", 0) == 1.0
    assert est.estimate_ratio(tmp_path / "missing.bin", 100) == 1.0


def test_sample_offsets_start_middle_end():
    mib = 1024 * 1024
    assert sample_offsets(10 * mib, 3, mib) == [0, 5 * mib - mib // 2, 9 * mib]
    assert sample_offsets(10 * mib, 1, mib) == [0]
    # Tiny file: all positions collapse to 0
    assert sample_offsets(100, 3, mib) == [0]


# --- Volume ---

def test_volume_probe_reports_non_ntfs_with_warning(tmp_path):
    if sys.platform == "win32":
        pytest.skip("host volume is likely NTFS")
    info = VolumeProbe().get_compression_info(str(tmp_path))
    assert not info.supports_per_file_compression
    assert info.warning


# --- Scanner ---

def _scanner(fixed_estimator, ntfs_probe, ratio=0.5):
    return DirectoryScanner(estimator=fixed_estimator(ratio), volume_probe=ntfs_probe)


def test_scan_requires_root(fixed_estimator, ntfs_probe):
    with pytest.raises(ScanError):
        _scanner(fixed_estimator, ntfs_probe).scan("  ")


def test_scan_missing_directory_returns_warning(tmp_path, fixed_estimator, ntfs_probe):
    result = _scanner(fixed_estimator, ntfs_probe).scan(str(tmp_path / "nope"))
    assert result.file_count == 0
    assert result.warning == "Directory does not exist."


def test_scan_aggregates_files(tmp_path, fixed_estimator, ntfs_probe):
    (tmp_path / "sub").mkdir()
    (tmp_path / "game.exe").write_bytes(b"x" * 1000)
    (tmp_path / "sub" / "tex.dds").write_bytes(b"y" * 3000)

    updates = []
    result = _scanner(fixed_estimator, ntfs_probe, ratio=0.5).scan(str(tmp_path), progress=updates.append)

    assert result.file_count == 2
    assert result.total_size == 4000
    assert result.estimated_savings == 2000
    assert result.average_ratio == pytest.approx(0.5)
    assert result.is_ntfs and result.supports_compression
    assert {f.category for f in result.files} == {"executable", "texture"}

    assert len(updates) == 2
    assert updates[-1].processed_files == 2
    assert updates[-1].processed_bytes == 4000
    assert updates[-1].total_bytes == 4000


def test_excluded_extension_is_not_estimated(tmp_path, fixed_estimator, ntfs_probe):
    (tmp_path / "crash.log").write_text("log line\n" * 100)
    (tmp_path / "data.pak").write_bytes(b"z" * 1000)
    scanner = _scanner(fixed_estimator, ntfs_probe)

    result = scanner.scan(str(tmp_path))

    by_name = {os.path.basename(f.path): f for f in result.files}
    log = by_name["crash.log"]
    assert ".log" in log.skip_reason
    assert log.estimated_ratio == 0.0
    assert not log.is_compressible
    assert scanner.estimator.calls == [str(tmp_path / "data.pak")]
    # Excluded files stay out of the average
    assert result.average_ratio == pytest.approx(0.5)


def test_low_savings_keeps_sizes_and_reports_percentage(tmp_path, fixed_estimator, ntfs_probe):
    (tmp_path / "video.mp4").write_bytes(b"v" * 5000)

    result = _scanner(fixed_estimator, ntfs_probe, ratio=0.99).scan(str(tmp_path))

    info = result.files[0]
    assert not info.is_compressible
    assert "%" in info.skip_reason
    assert info.size == 5000
    assert info.size_on_disk > 0
    assert result.estimated_savings == 0


def test_excluded_folder_matches_names_not_ancestors(tmp_path, fixed_estimator, ntfs_probe):
    root = tmp_path / "AppData" / "Local" / "Temp" / "MyGame"
    (root / "levels").mkdir(parents=True)
    (root / "ShaderCache").mkdir()
    (root / "levels" / "l1.pak").write_bytes(b"l" * 100)
    (root / "ShaderCache" / "s.bin").write_bytes(b"s" * 100)
    (root / "main.exe").write_bytes(b"m" * 100)

    result = _scanner(fixed_estimator, ntfs_probe).scan(str(root))

    rel = sorted(f.relative_path for f in result.files)
    assert rel == sorted(["main.exe", os.path.join("levels", "l1.pak")])


def test_root_is_scanned_even_if_its_name_matches(tmp_path, fixed_estimator, ntfs_probe):
    root = tmp_path / "cache"
    root.mkdir()
    (root / "a.bin").write_bytes(b"a")

    result = _scanner(fixed_estimator, ntfs_probe).scan(str(root))
    assert result.file_count == 1


def test_is_excluded_folder():
    frags = config.DEFAULT_EXCLUDED_FOLDER_FRAGMENTS
    assert is_excluded_folder("ShaderCache", frags)
    assert is_excluded_folder("Crashes", frags)
    assert not is_excluded_folder("Levels", frags)
    assert not is_excluded_folder("anything", [" ", ""])


def test_categorize():
    assert categorize("x/Game.EXE") == "executable"
    assert categorize("x/save1.sav") == "save_data"
    assert categorize("x/readme") == "unknown"


@needs_symlinks
def test_symlinked_directory_is_skipped_and_logged(tmp_path, fixed_estimator, ntfs_probe, caplog):
    root = tmp_path / "root"
    root.mkdir()
    (root / "own.bin").write_bytes(b"o")
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "foreign.bin").write_bytes(b"f")
    _symlink_dir(outside, root / "link")

    with caplog.at_level(logging.WARNING):
        result = _scanner(fixed_estimator, ntfs_probe).scan(str(root))

    names = [os.path.basename(f.path) for f in result.files]
    assert names == ["own.bin"]
    assert "Skipping reparse point directory" in caplog.text


@needs_symlinks
def test_symlinked_directory_followed_when_allowed(tmp_path, fixed_estimator, ntfs_probe):
    root = tmp_path / "root"
    root.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "foreign.bin").write_bytes(b"f")
    _symlink_dir(outside, root / "link")
    # Cycle back to the root must not loop
    _symlink_dir(root, outside / "back")

    options = ScanOptions(do_not_follow_reparse_points=False)
    result = _scanner(fixed_estimator, ntfs_probe).scan(str(root), options)

    names = [os.path.basename(f.path) for f in result.files]
    assert names == ["foreign.bin"]


def test_precancelled_scan_raises(tmp_path, fixed_estimator, ntfs_probe):
    (tmp_path / "a.bin").write_bytes(b"a")
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelled):
        _scanner(fixed_estimator, ntfs_probe).scan(str(tmp_path), token=token)


def test_cancel_between_files_raises(tmp_path, fixed_estimator, ntfs_probe):
    for i in range(5):
        (tmp_path / f"f{i}.bin").write_bytes(b"a")
    token = CancellationToken()

    with pytest.raises(OperationCancelled):
        _scanner(fixed_estimator, ntfs_probe).scan(str(tmp_path), progress=lambda p: token.cancel(), token=token)
