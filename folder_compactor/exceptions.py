"""
Custom exception hierarchy for the folder compactor.

Per-file and per-directory problems during a scan are recovered locally and
never surface here; these types cover failures the caller has to see.
"""


class CompactorError(Exception):
    """Base exception for all folder compactor errors."""
    pass


class OperationCancelled(CompactorError):
    """Raised when a scan or run observes its cancellation signal."""
    pass


class ScanError(CompactorError):
    """Raised when a scan cannot start (bad root argument)."""
    pass


class ToolLaunchError(CompactorError):
    """Raised when the external compression tool cannot be started."""
    pass


class JournalError(CompactorError):
    """Raised when the operation journal cannot be read or written."""
    pass
