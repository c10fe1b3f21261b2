"""
Volume capability probe: is the path on NTFS, and does the volume report
per-file compression support?
"""
import ctypes
import logging
import os
import sys
from typing import Optional, Tuple

from ..models import VolumeCompressionInfo

FILE_FILE_COMPRESSION = 0x00000010
NTFS_NAMES = {'ntfs', 'ntfs3', 'fuseblk'}

if sys.platform == "win32":
    from ctypes import wintypes

    kernel32 = ctypes.WinDLL('kernel32', use_last_error=True)

    kernel32.GetVolumeInformationW.argtypes = [
        wintypes.LPCWSTR,
        wintypes.LPWSTR, wintypes.DWORD,
        ctypes.POINTER(wintypes.DWORD),
        ctypes.POINTER(wintypes.DWORD),
        ctypes.POINTER(wintypes.DWORD),
        wintypes.LPWSTR, wintypes.DWORD,
    ]
    kernel32.GetVolumeInformationW.restype = wintypes.BOOL


def volume_root(path: str) -> str:
    """Drive/share root on Windows, mount point elsewhere."""
    path = os.path.abspath(path)
    if sys.platform == "win32":
        drive, _ = os.path.splitdrive(path)
        return drive + "\\" if drive else ""

    current = path
    while not os.path.ismount(current):
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    return current


class VolumeProbe:
    def get_compression_info(self, path: str) -> VolumeCompressionInfo:
        root = volume_root(path)
        if not root:
            return VolumeCompressionInfo(False, False, "", "", "Cannot determine drive root.")

        if sys.platform == "win32":
            fs_name, flags, error = self._query_windows(root)
        else:
            fs_name, flags, error = self._query_mounts(root)

        if error:
            return VolumeCompressionInfo(False, False, root, fs_name, error)

        is_ntfs = fs_name.lower() in NTFS_NAMES if sys.platform != "win32" else fs_name.upper() == "NTFS"
        supports = bool(flags & FILE_FILE_COMPRESSION)

        warning = None
        if not is_ntfs:
            warning = f"Volume is {fs_name or 'unknown'}. Per-file compression requires NTFS."
        elif not supports:
            warning = ("NTFS compression flag FILE_FILE_COMPRESSION is not reported. "
                       "Compression may not be supported on this volume.")

        return VolumeCompressionInfo(is_ntfs, supports, root, fs_name, warning)

    def _query_windows(self, root: str) -> Tuple[str, int, Optional[str]]:
        fs_buf = ctypes.create_unicode_buffer(64)
        flags = wintypes.DWORD(0)
        serial = wintypes.DWORD(0)
        max_len = wintypes.DWORD(0)

        ok = kernel32.GetVolumeInformationW(
            root, None, 0,
            ctypes.byref(serial), ctypes.byref(max_len), ctypes.byref(flags),
            fs_buf, len(fs_buf),
        )
        if not ok:
            err = ctypes.get_last_error()
            return "", 0, f"GetVolumeInformation failed: {err}."
        return fs_buf.value, flags.value, None

    def _query_mounts(self, root: str) -> Tuple[str, int, Optional[str]]:
        """
        Reads the filesystem type from /proc/mounts. Non-Windows hosts never
        expose the NTFS per-file compression flag, so flags are always 0.
        """
        try:
            with open("/proc/mounts", encoding="utf-8") as f:
                for line in f:
                    parts = line.split()
                    if len(parts) >= 3 and parts[1] == root:
                        return parts[2], 0, None
        except OSError as e:
            logging.debug(f"Cannot read /proc/mounts: {e}")
        return "", 0, None
