import os
import signal
import subprocess
import sys
import textwrap
import time

import pytest

from folder_compactor.database.journal import SqliteOperationJournal
from folder_compactor.models import VolumeCompressionInfo

FAKE_TOOL_SOURCE = textwrap.dedent("""\
    import os
    import subprocess
    import sys
    import time

    mode = os.environ.get("FAKE_COMPACT_MODE", "ok")

    args_file = os.environ.get("FAKE_COMPACT_ARGS")
    if args_file:
        with open(args_file, "w", encoding="utf-8") as f:
            f.write("\\n".join(sys.argv[1:]))

    started = os.environ.get("FAKE_COMPACT_STARTED")
    if started:
        open(started, "w").close()

    if mode == "ok":
        for name in ("a.bin", "b.bin"):
            print(os.path.join(os.getcwd(), name), flush=True)
        sys.exit(0)
    elif mode == "fail":
        for i in range(15):
            print(f"error line {i}", file=sys.stderr)
        sys.exit(3)
    elif mode == "slow":
        time.sleep(float(os.environ.get("FAKE_COMPACT_SLEEP", "0.6")))
        sys.exit(0)
    elif mode == "hang":
        time.sleep(60)
        sys.exit(0)
    elif mode == "tree":
        child = subprocess.Popen(
            [sys.executable, "-c", "import time; time.sleep(60)"],
            stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
        )
        child_file = os.environ["FAKE_COMPACT_CHILD"]
        with open(child_file + ".tmp", "w") as f:
            f.write(str(child.pid))
        os.replace(child_file + ".tmp", child_file)
        time.sleep(60)
        sys.exit(0)
    elif mode == "query":
        print("3 files within 1 directories were compressed.")
        print("5 files within 1 directories were not compressed.")
        sys.exit(0)
""")


@pytest.fixture
def journal(tmp_path):
    """Returns an initialized journal backed by a temporary SQLite file."""
    j = SqliteOperationJournal(tmp_path / "data" / "journal.db")
    j.initialize()
    return j


@pytest.fixture
def fake_tool_script(tmp_path):
    """A stand-in for compact.exe, driven by FAKE_COMPACT_* environment variables."""
    script = tmp_path / "fake_compact.py"
    script.write_text(f"#!{sys.executable}\n" + FAKE_TOOL_SOURCE, encoding="utf-8")
    os.chmod(script, 0o755)
    return script


@pytest.fixture
def fake_tool(fake_tool_script):
    """Command prefix for CompactRunner."""
    return [sys.executable, str(fake_tool_script)]


@pytest.fixture
def target_dir(tmp_path):
    d = tmp_path / "target"
    d.mkdir()
    (d / "a.bin").write_bytes(b"A" * 5000)
    (d / "b.bin").write_bytes(b"B" * 12000)
    return d


class FixedRatioEstimator:
    def __init__(self, ratio):
        self.ratio = ratio
        self.calls = []

    def estimate_ratio(self, path, size_bytes, sample_block_count=3, sample_block_size=1024 * 1024, token=None):
        self.calls.append(str(path))
        return self.ratio


class NtfsProbe:
    def get_compression_info(self, path):
        return VolumeCompressionInfo(True, True, "C:\\", "NTFS", None)


@pytest.fixture
def fixed_estimator():
    """Factory for estimators that return a constant ratio."""
    return FixedRatioEstimator


@pytest.fixture
def ntfs_probe():
    return NtfsProbe()


def _pid_alive(pid):
    if sys.platform == "win32":
        out = subprocess.run(["tasklist", "/FI", f"PID eq {pid}", "/NH"],
                             capture_output=True, text=True, check=False).stdout
        return str(pid) in out.split()
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    # A killed orphan may linger as a zombie until init reaps it
    try:
        with open(f"/proc/{pid}/stat", encoding="utf-8") as f:
            state = f.read().rsplit(")", 1)[1].split()[0]
        return state != "Z"
    except (OSError, IndexError):
        return True


@pytest.fixture
def grandchild(tmp_path, monkeypatch):
    """
    Switches the fake tool to "tree" mode, where it starts a long-lived child
    of its own. Yields a helper exposing that child's pid once it exists.
    """
    child_file = tmp_path / "child.pid"
    monkeypatch.setenv("FAKE_COMPACT_MODE", "tree")
    monkeypatch.setenv("FAKE_COMPACT_CHILD", str(child_file))

    class Grandchild:
        pid = None

        def wait_started(self, timeout=10):
            deadline = time.monotonic() + timeout
            while not child_file.exists() and time.monotonic() < deadline:
                time.sleep(0.05)
            self.pid = int(child_file.read_text())
            return self.pid

        def wait_gone(self, timeout=10):
            deadline = time.monotonic() + timeout
            while _pid_alive(self.pid) and time.monotonic() < deadline:
                time.sleep(0.05)
            return not _pid_alive(self.pid)

    g = Grandchild()
    yield g

    if g.pid is not None and _pid_alive(g.pid):
        try:
            if sys.platform == "win32":
                subprocess.run(["taskkill", "/PID", str(g.pid), "/F"], capture_output=True, check=False)
            else:
                os.kill(g.pid, signal.SIGKILL)
        except OSError:
            pass
