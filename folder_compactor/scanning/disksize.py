"""
Size-on-disk measurement (allocated bytes, reflecting active compression).

Fallback tiers, each logged at DEBUG when taken:
  1. Platform allocation query (GetCompressedFileSizeW / st_blocks).
  2. Logical size rounded up to the volume's cluster size.
  3. Logical size as-is.
"""
import ctypes
import logging
import os
import stat
import sys
from typing import Optional

from .volume import volume_root

if sys.platform == "win32":
    from ctypes import wintypes

    kernel32 = ctypes.WinDLL('kernel32', use_last_error=True)

    kernel32.GetCompressedFileSizeW.argtypes = [wintypes.LPCWSTR, ctypes.POINTER(wintypes.DWORD)]
    kernel32.GetCompressedFileSizeW.restype = wintypes.DWORD

    kernel32.GetDiskFreeSpaceW.argtypes = [
        wintypes.LPCWSTR,
        ctypes.POINTER(wintypes.DWORD), ctypes.POINTER(wintypes.DWORD),
        ctypes.POINTER(wintypes.DWORD), ctypes.POINTER(wintypes.DWORD),
    ]
    kernel32.GetDiskFreeSpaceW.restype = wintypes.BOOL

INVALID_FILE_SIZE = 0xFFFFFFFF
POSIX_BLOCK_UNIT = 512


def round_up_to_cluster(size_bytes: int, cluster_size: int) -> int:
    """Smallest multiple of cluster_size that is >= size_bytes (0 stays 0)."""
    if size_bytes <= 0:
        return 0
    if cluster_size <= 0:
        return size_bytes
    rem = size_bytes % cluster_size
    return size_bytes if rem == 0 else size_bytes + (cluster_size - rem)


def allocated_size(path: str) -> Optional[int]:
    """Tier 1: what the OS reports as allocated. None when unavailable."""
    if sys.platform == "win32":
        high = wintypes.DWORD(0)
        # Success does not reset the last error
        ctypes.set_last_error(0)
        low = kernel32.GetCompressedFileSizeW(path, ctypes.byref(high))
        err = ctypes.get_last_error()
        if low == INVALID_FILE_SIZE and err != 0:
            return None
        return (high.value << 32) + low

    st = os.stat(path, follow_symlinks=False)
    blocks = getattr(st, 'st_blocks', None)
    if blocks is None:
        return None
    return blocks * POSIX_BLOCK_UNIT


class DiskSizeMeasurer:
    def cluster_size(self, path: str) -> int:
        """Allocation unit of the volume holding path, 0 when unknown."""
        try:
            if sys.platform == "win32":
                root = volume_root(path)
                spc = wintypes.DWORD(0)
                bps = wintypes.DWORD(0)
                free = wintypes.DWORD(0)
                total = wintypes.DWORD(0)
                if not kernel32.GetDiskFreeSpaceW(root, ctypes.byref(spc), ctypes.byref(bps),
                                                  ctypes.byref(free), ctypes.byref(total)):
                    logging.debug(f"GetDiskFreeSpaceW failed for {root}: {ctypes.get_last_error()}")
                    return 0
                return spc.value * bps.value

            st = os.statvfs(path)
            return st.f_frsize or st.f_bsize
        except (OSError, AttributeError) as e:
            logging.debug(f"Cluster size unavailable for {path}: {e}")
            return 0

    def size_on_disk(self, path: str, logical_size: int, cluster_size: int = 0) -> int:
        try:
            allocated = allocated_size(path)
        except OSError as e:
            logging.debug(f"Allocation query failed for {path}: {e}")
            allocated = None

        if allocated is not None and (allocated > 0 or logical_size == 0):
            return allocated

        if cluster_size > 0:
            logging.debug(f"Using cluster round-up for {path}")
            return round_up_to_cluster(logical_size, cluster_size)

        logging.debug(f"Using logical size for {path}")
        return max(0, logical_size)

    def directory_size_on_disk(self, root: str) -> int:
        """
        Sum of allocated bytes under root. Symlinks/junctions are not followed.
        Unreadable entries are skipped.
        """
        cluster = self.cluster_size(root)
        total = 0
        stack = [root]
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError as e:
                logging.warning(f"Cannot measure directory {current}: {e}")
                continue

            for e in entries:
                try:
                    if is_reparse_point(e):
                        continue
                    if e.is_dir(follow_symlinks=False):
                        stack.append(e.path)
                    elif e.is_file(follow_symlinks=False):
                        size = e.stat(follow_symlinks=False).st_size
                        total += self.size_on_disk(e.path, size, cluster)
                except OSError as err:
                    logging.debug(f"Skipping {e.path} while measuring: {err}")
        return total


def is_reparse_point(entry: os.DirEntry) -> bool:
    """Symlink, junction or any other entry carrying the reparse-point attribute."""
    if entry.is_symlink():
        return True
    is_junction = getattr(entry, 'is_junction', None)
    if is_junction and is_junction():
        return True
    attrs = getattr(entry.stat(follow_symlinks=False), 'st_file_attributes', 0)
    return bool(attrs & stat.FILE_ATTRIBUTE_REPARSE_POINT)
