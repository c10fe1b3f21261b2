"""
Drives compact.exe (or a compatible tool) as a subprocess.

Three modes: compress (/C), uncompress (/U) and a read-only status query.
Runs stream progress through a callback, are cancellable through a
CancellationToken (which kills the whole process tree) and always return a
CompactRunResult; only a launch failure raises.
"""
import logging
import os
import re
import signal
import subprocess
import sys
import threading
import time
from datetime import timedelta
from typing import Callable, List, Optional, Sequence, Union

from .. import config
from ..abstractions import OutputObserver, ProgressCallback
from ..exceptions import OperationCancelled, ToolLaunchError
from ..models import (
    CompactQueryResult,
    CompactRunOptions,
    CompactRunResult,
    CompressionAlgorithm,
    CompressionProgress,
)
from ..runs import CancellationToken
from .observers import NullObserver, PathLineObserver

# CREATE_NO_WINDOW flag prevents console window from appearing
CREATE_NO_WINDOW = 0x08000000


def build_arguments(mode_flag: Optional[str],
                    directory: str,
                    options: CompactRunOptions,
                    extra: Optional[str] = None) -> List[str]:
    """{mode} /S:"{dir}" [/I] [/F] [/Q] [/EXE:ALGO], as an argv list."""
    args = []
    if mode_flag:
        args.append(mode_flag)
    if options.recursive:
        args.append(f"/S:{directory}")
    if options.continue_on_errors:
        args.append("/I")
    if options.force:
        args.append("/F")
    if options.quiet:
        args.append("/Q")
    if extra:
        args.append(extra)
    return args


def format_command_line(command: Sequence[str]) -> str:
    """
    Windows command line for the argv list. compact.exe expects /S:"dir"
    with the quotes inside the switch, which list2cmdline would escape.
    """
    parts = []
    for arg in command:
        if arg.upper().startswith("/S:"):
            parts.append(f'{arg[:3]}"{arg[3:]}"')
        else:
            parts.append(subprocess.list2cmdline([arg]))
    return " ".join(parts)


def kill_process_tree(proc: subprocess.Popen):
    """Kills proc and every process it started."""
    if sys.platform == "win32":
        try:
            r = subprocess.run(
                ["taskkill", "/PID", str(proc.pid), "/T", "/F"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                creationflags=CREATE_NO_WINDOW,
                check=False,
            )
            if r.returncode == 0:
                return
        except OSError as e:
            logging.warning(f"taskkill failed for {proc.pid}: {e}")
        proc.kill()
        return

    # The tool runs in its own session, so its pid is the process group id
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError as e:
        logging.warning(f"killpg failed for {proc.pid}: {e}")
        proc.kill()


def extract_counts(output: str):
    """
    Best-effort (compressed, uncompressed) file counts from query output,
    e.g. "12 files within 3 directories were compressed." Either may be None.
    """
    compressed = None
    uncompressed = None
    for raw in output.splitlines():
        line = raw.strip().lower()
        if "file" not in line:
            continue
        m = re.search(r'\d+', line.replace(",", "").replace(".", ""))
        if not m:
            continue
        count = int(m.group(0))
        if "not" in line and "compress" in line:
            uncompressed = count
        elif "compress" in line:
            compressed = count
    return compressed, uncompressed


class _MonotonicProgress:
    """
    Serializes progress delivery and keeps processed bytes from going
    backwards within one run (heartbeat estimates and tool output interleave).
    """

    def __init__(self, callback: Optional[ProgressCallback], total_bytes: int):
        self.callback = callback
        self.total_bytes = max(0, total_bytes)
        self._high = 0
        self._lock = threading.Lock()

    def report(self, p: CompressionProgress):
        if self.callback is None:
            return
        with self._lock:
            if p.total_bytes <= 0:
                p.total_bytes = self.total_bytes
            p.processed_bytes = max(self._high, min(p.processed_bytes, p.total_bytes or p.processed_bytes))
            self._high = p.processed_bytes
            self.callback(p)


class CompactRunner:
    def __init__(self,
                 executable: Union[str, Sequence[str]] = config.COMPACT_EXECUTABLE,
                 observer_factory: Callable[[], OutputObserver] = PathLineObserver,
                 heartbeat_interval: float = config.HEARTBEAT_INTERVAL_SEC):
        self.executable = [executable] if isinstance(executable, str) else list(executable)
        self.observer_factory = observer_factory
        self.heartbeat_interval = heartbeat_interval

    # --- Public API ---

    def compress(self,
                 directory: str,
                 algorithm: CompressionAlgorithm,
                 options: CompactRunOptions,
                 progress: Optional[ProgressCallback] = None,
                 token: Optional[CancellationToken] = None) -> CompactRunResult:
        directory = os.path.abspath(directory)
        args = build_arguments(config.COMPRESS_FLAG, directory, options, algorithm.to_compact_argument())
        return self._run(directory, args, options, progress, token)

    def uncompress(self,
                   directory: str,
                   options: CompactRunOptions,
                   progress: Optional[ProgressCallback] = None,
                   token: Optional[CancellationToken] = None) -> CompactRunResult:
        directory = os.path.abspath(directory)
        args = build_arguments(config.UNCOMPRESS_FLAG, directory, options)
        return self._run(directory, args, options, progress, token)

    def query(self, directory: str, token: Optional[CancellationToken] = None) -> CompactQueryResult:
        """Status only: no /C or /U, so nothing on disk changes."""
        directory = os.path.abspath(directory)
        token = token or CancellationToken()
        token.raise_if_cancelled()

        args = build_arguments(None, directory, CompactRunOptions(force=False, quiet=True))
        proc = self._start(directory, args)
        unregister = token.register(lambda: self._kill(proc, None))
        try:
            out, err = proc.communicate()
        finally:
            unregister()

        if token.is_cancelled:
            raise OperationCancelled("Status query was cancelled.")

        output = out or ""
        if err and err.strip():
            output = output + os.linesep + err

        compressed, uncompressed = extract_counts(output)
        return CompactQueryResult(
            exit_code=proc.returncode,
            output=output,
            compressed_files=compressed,
            uncompressed_files=uncompressed,
        )

    # --- Internals ---

    def _command(self, args: List[str]):
        command = self.executable + args
        if sys.platform == "win32":
            return format_command_line(command)
        return command

    def _start(self, directory: str, args: List[str]) -> subprocess.Popen:
        command = self._command(args)
        display = command if isinstance(command, str) else format_command_line(command)
        logging.info(f"Starting {display}")

        kwargs = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = CREATE_NO_WINDOW
        else:
            kwargs["start_new_session"] = True

        try:
            return subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=directory,
                encoding="utf-8",
                errors="ignore",
                bufsize=1,
                **kwargs,
            )
        except OSError as e:
            logging.error(f"{self.executable[0]} failed to start: {e}")
            raise ToolLaunchError(f"Cannot start {self.executable[0]}: {e}") from e

    def _kill(self, proc: subprocess.Popen, result: Optional[CompactRunResult]):
        if proc.poll() is not None:
            return
        logging.warning(f"Cancellation requested; killing {self.executable[0]} (pid {proc.pid})")
        try:
            kill_process_tree(proc)
        except OSError as e:
            logging.warning(f"Failed to kill {self.executable[0]}: {e}")
        if result is not None:
            result.was_cancelled = True

    def _run(self,
             directory: str,
             args: List[str],
             options: CompactRunOptions,
             progress: Optional[ProgressCallback],
             token: Optional[CancellationToken]) -> CompactRunResult:
        token = token or CancellationToken()
        token.raise_if_cancelled()

        proc = self._start(directory, args)
        try:
            return self._supervise(proc, options, progress, token)
        except BaseException:
            # Never leave the tool running once this call has failed
            if proc.poll() is None:
                logging.warning(f"Run aborted; killing {self.executable[0]} (pid {proc.pid})")
                try:
                    kill_process_tree(proc)
                except OSError as e:
                    logging.warning(f"Failed to kill {self.executable[0]}: {e}")
            proc.wait()
            raise

    def _supervise(self,
                   proc: subprocess.Popen,
                   options: CompactRunOptions,
                   progress: Optional[ProgressCallback],
                   token: CancellationToken) -> CompactRunResult:
        result = CompactRunResult(started=True)

        # Never let the tool block on interactive input
        try:
            proc.stdin.close()
        except OSError:
            pass

        gate = _MonotonicProgress(progress, options.approx_total_bytes)
        observer = NullObserver() if options.quiet else self.observer_factory()
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        gate.report(CompressionProgress(status_message="Running compact.exe..."))

        def report_quietly(update: CompressionProgress):
            # Reader threads keep draining the pipes even if the callback raises
            try:
                gate.report(update)
            except Exception as e:
                logging.error(f"Progress callback failed: {e}")

        def pump_stdout():
            for line in proc.stdout:
                line = line.rstrip("\r\n")
                stdout_lines.append(line)
                update = observer.observe(line)
                if update is not None:
                    report_quietly(update)

        def pump_stderr():
            for line in proc.stderr:
                line = line.rstrip("\r\n")
                stderr_lines.append(line)
                if line.strip():
                    result.errors.append(line)

        stop = threading.Event()
        t0 = time.monotonic()

        def heartbeat():
            while True:
                report_quietly(self._heartbeat_progress(observer, options, time.monotonic() - t0))
                if stop.wait(self.heartbeat_interval):
                    break

        readers = [
            threading.Thread(target=pump_stdout, name="compact-stdout", daemon=True),
            threading.Thread(target=pump_stderr, name="compact-stderr", daemon=True),
        ]
        hb = threading.Thread(target=heartbeat, name="compact-heartbeat", daemon=True)
        for t in readers:
            t.start()
        hb.start()

        unregister = token.register(lambda: self._kill(proc, result))
        try:
            proc.wait()
        finally:
            unregister()
            stop.set()
            hb.join(config.HEARTBEAT_JOIN_GRACE_SEC)
            for t in readers:
                t.join(5)

        result.exit_code = proc.returncode
        result.stdout = "\n".join(stdout_lines)
        result.stderr = "\n".join(stderr_lines)

        logging.info(
            f"{self.executable[0]} finished ExitCode={result.exit_code} Cancelled={result.was_cancelled}"
        )
        return result

    def _heartbeat_progress(self, observer, options: CompactRunOptions, elapsed: float) -> CompressionProgress:
        """
        Synthetic progress: assumed throughput x elapsed time, capped at the
        known total. Without both numbers it only reports elapsed time.
        """
        total = options.approx_total_bytes
        bps = options.assumed_throughput_bps

        processed = 0
        eta = None
        speed = 0.0
        if total > 0 and bps > 0:
            processed = int(min(total, bps * max(0.0, elapsed)))
            eta = timedelta(seconds=max(0, total - processed) / bps)
            speed = bps / config.MIB

        status = f"Running compact.exe... Elapsed {_hms(elapsed)}"
        if eta is not None:
            status += f" | ETA {_hms(eta.total_seconds())}"

        return CompressionProgress(
            current_file=getattr(observer, "current_file", ""),
            processed_files=getattr(observer, "processed_files", 0),
            processed_bytes=processed,
            total_bytes=total,
            speed_mbps=speed,
            eta=eta,
            status_message=status,
        )


def _hms(seconds: float) -> str:
    seconds = int(seconds)
    return f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"
