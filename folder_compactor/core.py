import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, UTC
from typing import List, Optional

from . import config
from .abstractions import AllocationMeasurer, CompressionRunner, FolderScanner, OperationJournal
from .compact.runner import CompactRunner
from .exceptions import CompactorError, OperationCancelled
from .models import (
    CompactQueryResult,
    CompactRunOptions,
    CompactRunResult,
    CompressionAlgorithm,
    CompressionMode,
    FolderAnalysisResult,
    OperationRecord,
    OperationStatus,
    ScanOptions,
)
from .runs import RunContext, RunRegistry
from .scanning.disksize import DiskSizeMeasurer
from .scanning.filesystem import DirectoryScanner
from .throughput import estimate_throughput


class CompactorEngine:
    """
    Composes scanner, runner and journal.

    Every compress / rollback writes an InProgress record before the tool
    starts and exactly one terminal update after it exits, is killed, or
    fails to launch.
    """

    def __init__(self,
                 journal: OperationJournal,
                 scanner: Optional[FolderScanner] = None,
                 runner: Optional[CompressionRunner] = None,
                 measurer: Optional[AllocationMeasurer] = None,
                 registry: Optional[RunRegistry] = None,
                 max_workers: int = 2):
        self.journal = journal
        self.measurer = measurer or DiskSizeMeasurer()
        self.scanner = scanner or DirectoryScanner(measurer=self.measurer)
        self.runner = runner or CompactRunner()
        self.registry = registry or RunRegistry()
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None

        # A journal that cannot be opened is fatal
        self.journal.initialize()

    # --- Operations ---

    def analyze(self,
                folder: str,
                options: Optional[ScanOptions] = None,
                progress=None,
                context: Optional[RunContext] = None) -> FolderAnalysisResult:
        ctx = context or self.registry.begin(folder, 'analyze')
        try:
            return self.scanner.scan(folder, options or ScanOptions(), progress, ctx.token)
        finally:
            self.registry.finish(ctx)

    def compress(self,
                 folder: str,
                 mode: CompressionMode = CompressionMode.SAFE,
                 algorithm: CompressionAlgorithm = CompressionAlgorithm.NTFS,
                 options: Optional[CompactRunOptions] = None,
                 before_bytes: Optional[int] = None,
                 progress=None,
                 context: Optional[RunContext] = None) -> OperationRecord:
        """
        Compresses folder in place. before_bytes is normally the on-disk total
        from a prior analyze(); it is measured here when omitted.
        """
        request = dict(mode=mode, algorithm=algorithm, options=options)
        ctx = context or self.registry.begin(folder, 'compress', request)
        ctx.request = request

        try:
            folder = os.path.abspath(folder)
            if before_bytes is None:
                before_bytes = self.measurer.directory_size_on_disk(folder)
            options = self._run_options(options, before_bytes, algorithm)

            record = OperationRecord(
                path=folder,
                mode=mode,
                algorithm=algorithm,
                before_bytes=before_bytes,
            )
            logging.info(f"Compressing {folder} with {algorithm.display_name} ({before_bytes} bytes on disk)")
            return self._execute(
                record,
                lambda: self.runner.compress(folder, algorithm, options, progress, ctx.token),
                OperationStatus.COMPLETED,
            )
        finally:
            self.registry.finish(ctx)

    def rollback(self,
                 folder: str,
                 original_operation_id=None,
                 options: Optional[CompactRunOptions] = None,
                 before_bytes: Optional[int] = None,
                 progress=None,
                 context: Optional[RunContext] = None) -> OperationRecord:
        """Uncompresses folder; the record links back to original_operation_id when given."""
        ctx = context or self.registry.begin(folder, 'rollback')
        try:
            folder = os.path.abspath(folder)
            if before_bytes is None:
                before_bytes = self.measurer.directory_size_on_disk(folder)
            options = self._run_options(options, before_bytes, CompressionAlgorithm.NONE)

            record = OperationRecord(
                path=folder,
                mode=CompressionMode.SAFE,
                algorithm=CompressionAlgorithm.NONE,
                before_bytes=before_bytes,
                is_rollback=True,
                original_operation_id=original_operation_id,
            )
            logging.info(f"Rolling back {folder} ({before_bytes} bytes on disk)")
            return self._execute(
                record,
                lambda: self.runner.uncompress(folder, options, progress, ctx.token),
                OperationStatus.ROLLED_BACK,
            )
        finally:
            self.registry.finish(ctx)

    def query_status(self, folder: str) -> CompactQueryResult:
        return self.runner.query(os.path.abspath(folder))

    def verify_rollback(self, folder: str) -> Optional[int]:
        """
        Number of files the tool still reports as compressed after a rollback.
        None when that cannot be determined; never raises for tool problems.
        """
        try:
            q = self.query_status(folder)
        except OperationCancelled:
            raise
        except CompactorError as e:
            logging.warning(f"Integrity check skipped for {folder}: {e}")
            return None

        if q.compressed_files is None:
            logging.info(f"Integrity check for {folder}: no compressed-file count in tool output")
        elif q.compressed_files > 0:
            logging.warning(f"Integrity check for {folder}: {q.compressed_files} files still compressed")
        else:
            logging.info(f"Integrity check for {folder}: no compressed files remain")
        return q.compressed_files

    def estimate_throughput(self, algorithm: CompressionAlgorithm) -> float:
        """Assumed bytes/sec for ETA display."""
        return estimate_throughput(self.journal.get_recent(config.THROUGHPUT_HISTORY_SIZE), algorithm)

    def stale_operations(self) -> List[OperationRecord]:
        """Records left InProgress by a crash."""
        return self.journal.get_unfinished()

    # --- Run control ---

    def pause(self, folder: str) -> bool:
        """Kills the running compress for folder; resume() re-runs it."""
        ctx = self.registry.get(folder)
        if ctx is None or ctx.kind != 'compress':
            return False
        self.registry.cancel(folder, pause=True)
        logging.info(f"Paused compression of {folder}")
        return True

    def resume(self, folder: str, progress=None) -> Optional[OperationRecord]:
        """Starts a fresh compress with the paused request. None if nothing is paused."""
        ctx = self.registry.take_paused(folder)
        if ctx is None:
            return None
        logging.info(f"Resuming compression of {folder}")
        return self.compress(folder, progress=progress, **ctx.request)

    def stop(self, folder: str) -> bool:
        ctx = self.registry.cancel(folder)
        if ctx is not None:
            logging.info(f"Stop requested for {ctx.kind} on {folder}")
        return ctx is not None

    def submit(self, kind: str, folder: str, **kwargs) -> Future:
        """
        Runs analyze / compress / rollback on a worker thread. The run context
        is registered before this returns, so stop() and pause() see it at once.
        """
        if kind not in ('analyze', 'compress', 'rollback'):
            raise ValueError(f"Unknown operation: {kind}")

        ctx = self.registry.begin(folder, kind)
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="compactor")
        return self._executor.submit(getattr(self, kind), folder, context=ctx, **kwargs)

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # --- Internals ---

    def _run_options(self, options, before_bytes: int, algorithm: CompressionAlgorithm) -> CompactRunOptions:
        options = options or CompactRunOptions()
        if options.approx_total_bytes <= 0:
            options = replace(options, approx_total_bytes=before_bytes)
        if options.assumed_throughput_bps <= 0:
            options = replace(options, assumed_throughput_bps=self.estimate_throughput(algorithm))
        return options

    def _execute(self, record: OperationRecord, run, success_status: OperationStatus) -> OperationRecord:
        record.started_at = datetime.now(UTC)
        record.status = OperationStatus.IN_PROGRESS
        self.journal.add(record)

        try:
            result: CompactRunResult = run()
        except OperationCancelled:
            self._finish(record, OperationStatus.CANCELLED)
            raise
        except Exception as e:
            logging.error(f"{'Rollback' if record.is_rollback else 'Compression'} of {record.path} failed: {e}")
            self._finish(record, OperationStatus.FAILED, str(e))
            raise
        except BaseException as e:
            # KeyboardInterrupt, SystemExit: the run was abandoned, not failed
            logging.warning(f"Operation {record.id} interrupted: {type(e).__name__}")
            self._finish(record, OperationStatus.CANCELLED)
            raise

        if result.was_cancelled:
            self._finish(record, OperationStatus.CANCELLED)
        elif result.exit_code == 0:
            self._finish(record, success_status)
        else:
            errors = result.errors[:config.MAX_ERROR_LINES]
            message = "\n".join(errors) if errors else f"Tool exited with code {result.exit_code}"
            self._finish(record, OperationStatus.FAILED, message)
        return record

    def _finish(self, record: OperationRecord, status: OperationStatus, error: Optional[str] = None):
        record.status = status
        record.error_message = error
        record.finished_at = datetime.now(UTC)
        try:
            record.after_bytes = self.measurer.directory_size_on_disk(record.path)
        except OSError as e:
            logging.warning(f"Cannot measure {record.path} after run: {e}")
            record.after_bytes = 0
        self.journal.update(record)
        logging.info(f"Operation {record.id} finished: {status.name}")
