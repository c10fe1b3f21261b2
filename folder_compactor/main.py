import argparse
import concurrent.futures
import logging
import sys
from pathlib import Path

from tqdm import tqdm

from . import config
from .compact.runner import CompactRunner
from .core import CompactorEngine
from .database.journal import SqliteOperationJournal
from .exceptions import CompactorError, OperationCancelled
from .models import (
    CompactRunOptions,
    CompressionAlgorithm,
    CompressionMode,
    CompressionProgress,
    OperationStatus,
    ScanOptions,
)
from .reporting import ReportGenerator, format_bytes, operation_summary
from .scanning.volume import VolumeProbe

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


def setup_logging(log_dir: Path, verbose: bool):
    """Sets up logging to both console and a file in the data directory."""
    log_level = logging.DEBUG if verbose else logging.INFO

    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / config.DEFAULT_LOG_NAME

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Folder Compactor: analyze and transparently compress folders")

    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    p.add_argument("--db", type=Path, default=None,
                   help=f"Custom path for the journal DB (default: {config.DEFAULT_DATA_DIR / config.DEFAULT_DB_NAME})")
    p.add_argument("--tool", default=config.COMPACT_EXECUTABLE, help="Compression tool executable")

    sub = p.add_subparsers(dest="command", required=True)

    a = sub.add_parser("analyze", help="Estimate how much a folder would shrink")
    a.add_argument("folder", type=Path)
    a.add_argument("--csv", type=Path, default=None, help="Write a per-file CSV report")
    a.add_argument("--follow-links", action="store_true", help="Descend into symlinks/junctions")
    a.add_argument("--exclude-ext", nargs="*", default=None, help="Extensions never estimated")
    a.add_argument("--exclude-folder", nargs="*", default=None, help="Folder name fragments to skip")
    a.add_argument("--min-savings", type=float, default=config.MIN_SAVINGS_RATIO,
                   help="Minimum estimated savings ratio for a file to count as compressible")

    c = sub.add_parser("compress", help="Compress a folder in place")
    c.add_argument("folder", type=Path)
    c.add_argument("--mode", choices=["safe", "stronger"], default="safe")
    c.add_argument("--algorithm", choices=[a.name for a in CompressionAlgorithm if a != CompressionAlgorithm.NONE],
                   default=None, help="Default: NTFS for safe, LZX for stronger")
    c.add_argument("--force-volume", action="store_true",
                   help="Run even if the volume does not report per-file compression support")
    c.add_argument("--show-files", action="store_true",
                   help="Let the tool list files (slow on large trees)")

    r = sub.add_parser("rollback", help="Uncompress a folder")
    r.add_argument("folder", type=Path)
    r.add_argument("--operation", default=None, help="Id of the compression being reverted")
    r.add_argument("--verify", action="store_true", help="Query compression state afterwards")

    s = sub.add_parser("status", help="Ask the tool for the folder's compression state")
    s.add_argument("folder", type=Path)

    h = sub.add_parser("history", help="Show recent operations")
    h.add_argument("--limit", type=int, default=20)

    return p.parse_args(argv)


class ProgressBar:
    """Adapts CompressionProgress callbacks to a tqdm byte bar."""

    def __init__(self, desc: str):
        self.bar = tqdm(total=0, unit="B", unit_scale=True, unit_divisor=1024, desc=desc)

    def __call__(self, p: CompressionProgress):
        if p.total_bytes > 0 and self.bar.total != p.total_bytes:
            self.bar.total = p.total_bytes
        if p.processed_bytes > self.bar.n:
            self.bar.update(p.processed_bytes - self.bar.n)
        if p.status_message:
            self.bar.set_postfix_str(p.status_message, refresh=False)
        self.bar.refresh()

    def close(self):
        self.bar.close()


def wait_for(engine: CompactorEngine, future, folder: Path):
    """Blocks on a submitted operation; Ctrl+C cancels it cooperatively."""
    interrupted = False
    while True:
        try:
            return future.result(timeout=0.5), interrupted
        except concurrent.futures.TimeoutError:
            continue
        except KeyboardInterrupt:
            if not interrupted:
                logging.warning("Operation cancelled by user.")
                engine.stop(str(folder))
            interrupted = True


def cmd_analyze(engine: CompactorEngine, args) -> int:
    overrides = {}
    if args.exclude_ext is not None:
        overrides['excluded_extensions'] = set(args.exclude_ext)
    if args.exclude_folder is not None:
        overrides['excluded_folder_fragments'] = list(args.exclude_folder)
    options = ScanOptions(
        do_not_follow_reparse_points=not args.follow_links,
        min_savings_ratio=args.min_savings,
        **overrides,
    )

    bar = ProgressBar("Analyzing")
    try:
        result, interrupted = wait_for(engine, engine.submit('analyze', str(args.folder), options=options, progress=bar), args.folder)
    finally:
        bar.close()

    reporter = ReportGenerator()
    for line in reporter.analysis_summary(result):
        print(line)
    if args.csv:
        reporter.generate_analysis_report(result, str(args.csv))
    return EXIT_INTERRUPTED if interrupted else EXIT_OK


def cmd_compress(engine: CompactorEngine, args) -> int:
    folder = args.folder.resolve()
    volume = VolumeProbe().get_compression_info(str(folder))
    if not volume.supports_per_file_compression and not args.force_volume:
        logging.error(f"{folder} is not on a volume that supports per-file compression. {volume.warning or ''}".strip())
        return EXIT_FAILED

    mode = CompressionMode.STRONGER if args.mode == "stronger" else CompressionMode.SAFE
    if args.algorithm:
        algorithm = CompressionAlgorithm[args.algorithm]
    else:
        algorithm = CompressionAlgorithm.LZX if mode == CompressionMode.STRONGER else CompressionAlgorithm.NTFS

    options = CompactRunOptions(quiet=not args.show_files)
    bar = ProgressBar("Compressing")
    try:
        record, interrupted = wait_for(
            engine,
            engine.submit('compress', str(folder), mode=mode, algorithm=algorithm, options=options, progress=bar),
            folder,
        )
    finally:
        bar.close()

    print(operation_summary(record))
    if interrupted or record.status == OperationStatus.CANCELLED:
        return EXIT_INTERRUPTED
    return EXIT_OK if record.status == OperationStatus.COMPLETED else EXIT_FAILED


def cmd_rollback(engine: CompactorEngine, args) -> int:
    folder = args.folder.resolve()
    original_id = None
    if args.operation:
        original = engine.journal.get_by_id(args.operation)
        if original is None:
            logging.error(f"Operation {args.operation} is not in the journal.")
            return EXIT_FAILED
        original_id = original.id

    bar = ProgressBar("Rolling back")
    try:
        record, interrupted = wait_for(
            engine,
            engine.submit('rollback', str(folder), original_operation_id=original_id, progress=bar),
            folder,
        )
    finally:
        bar.close()

    print(operation_summary(record))
    if interrupted or record.status == OperationStatus.CANCELLED:
        return EXIT_INTERRUPTED
    if record.status != OperationStatus.ROLLED_BACK:
        return EXIT_FAILED

    if args.verify:
        remaining = engine.verify_rollback(str(folder))
        if remaining is None:
            print("Integrity check: compressed-file count unavailable")
        else:
            print(f"Integrity check: {remaining} files still compressed")
    return EXIT_OK


def cmd_status(engine: CompactorEngine, args) -> int:
    q = engine.query_status(str(args.folder))
    print(q.output.strip())
    if q.compressed_files is not None or q.uncompressed_files is not None:
        print(f"Compressed: {q.compressed_files if q.compressed_files is not None else '?'}, "
              f"not compressed: {q.uncompressed_files if q.uncompressed_files is not None else '?'}")
    return EXIT_OK if q.exit_code == 0 else EXIT_FAILED


def cmd_history(engine: CompactorEngine, args) -> int:
    for op in engine.journal.get_recent(args.limit):
        kind = "rollback" if op.is_rollback else op.algorithm.name
        started = op.started_at.strftime("%Y-%m-%d %H:%M:%S") if op.started_at else "-"
        print(f"{op.id}  {started}  {op.status.name:<11} {kind:<9} "
              f"{format_bytes(op.saved_bytes):>10}  {op.path}")

    stale = engine.stale_operations()
    if stale:
        print()
        print(f"{len(stale)} operation(s) never finished (interrupted run?):")
        for op in stale:
            print(f"  {op.id}  {op.path}")
    return EXIT_OK


COMMANDS = {
    "analyze": cmd_analyze,
    "compress": cmd_compress,
    "rollback": cmd_rollback,
    "status": cmd_status,
    "history": cmd_history,
}


def main(argv=None) -> int:
    args = parse_args(argv)

    db_path = args.db if args.db else config.DEFAULT_DATA_DIR / config.DEFAULT_DB_NAME
    setup_logging(db_path.parent, args.verbose)
    logging.debug(f"=== Folder Compactor: {args.command} ===")

    try:
        engine = CompactorEngine(SqliteOperationJournal(db_path), runner=CompactRunner(args.tool))
    except CompactorError as e:
        logging.error(f"Cannot open journal: {e}")
        return EXIT_FAILED

    try:
        return COMMANDS[args.command](engine, args)
    except OperationCancelled:
        logging.warning("Operation cancelled.")
        return EXIT_INTERRUPTED
    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user.")
        return EXIT_INTERRUPTED
    except CompactorError as e:
        logging.error(str(e))
        return EXIT_FAILED
    except Exception:
        logging.exception(f"Fatal error during {args.command}.")
        return EXIT_FAILED
    finally:
        engine.close()


if __name__ == "__main__":
    sys.exit(main())
