"""
Shared pytest fixtures and helpers for the ParallelSCP test suite.
"""

import itertools
import json
import pathlib
import stat
import sys
import textwrap

import pytest

# Ensure the project root is importable regardless of how
# pytest is invoked so every test file can simply do
# ``import parallelscp`` or ``from parallelscp import ...``.
_PROJECT_ROOT = pathlib.Path(__file__).parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

import parallelscp  # noqa: E402 - imported after path fix
from parallelscp import (  # noqa: E402
    TransferJob,
    _result_path,
    publish_result,
)


# ---------------------------------------------------------------------------
# In-process stand-in for ProcessLauncher
# ---------------------------------------------------------------------------

LAUNCH_ERROR = "launch-error"
NO_PID = "no-pid"


class FakeHandle:
    """Task handle that reports alive for ``ticks`` polls, then publishes its outcome."""

    def __init__(self, launcher, pid, record, attempt, outcome, ticks):
        self.launcher = launcher
        self.pid = pid
        self.sentinel = pid
        self.record = record
        self.attempt = attempt
        self.outcome = outcome
        self.finished = False
        self._ticks = ticks

    def is_alive(self):
        if self.finished:
            return False
        if self._ticks > 0:
            self._ticks -= 1
            return True
        self._finish()
        return False

    def join(self, timeout=None):
        if not self.finished:
            self._finish()

    def _finish(self):
        self.finished = True
        if self.outcome is not None:
            path = _result_path(self.launcher.artifact_dir, self.record.artifact_key, self.attempt)
            publish_result(path, self.outcome)


class FakeLauncher:
    """Launcher whose tasks finish after a fixed number of liveness polls.

    ``outcomes`` maps a host name to the status of each attempt; the last
    entry repeats. ``None`` publishes nothing, ``LAUNCH_ERROR`` makes the launch
    itself fail and ``NO_PID`` returns a handle whose process never got a pid.
    """

    def __init__(self, artifact_dir, outcomes=None, ticks=1, state=None):
        self.artifact_dir = pathlib.Path(artifact_dir)
        self.outcomes = outcomes or {}
        self.ticks = ticks
        self.state = state
        self.handles = []
        self.launches = []
        self.wait_calls = 0
        self.peak_initial = 0
        self._pids = itertools.count(1000)

    def launch(self, record, attempt):
        seq = self.outcomes.get(record.name, [0])
        outcome = seq[min(attempt, len(seq)) - 1]
        self.launches.append((record.name, attempt))
        if outcome == LAUNCH_ERROR:
            raise OSError("Resource temporarily unavailable")
        if outcome == NO_PID:
            handle = FakeHandle(self, None, record, attempt, None, 0)
            handle.finished = True
            self.handles.append(handle)
            return handle
        assert not any(h.record is record and not h.finished for h in self.handles), (
            f"{record.name} launched while a task for it is outstanding"
        )
        if self.state is not None and attempt == 1:
            self.peak_initial = max(self.peak_initial, self.state.slots.in_use + 1)
        handle = FakeHandle(self, next(self._pids), record, attempt, outcome, self.ticks)
        self.handles.append(handle)
        return handle

    def wait(self, handles, timeout):
        self.wait_calls += 1


@pytest.fixture(scope="session")
def fake_launcher_cls():
    """The FakeLauncher class (session scoped so Hypothesis tests can use it)."""
    return FakeLauncher


# ---------------------------------------------------------------------------
# Fake scp executable for end-to-end runs through real worker processes
# ---------------------------------------------------------------------------

_FAKE_SCP_SOURCE = """\
#!{python}
import json
import pathlib
import sys
import time

PLAN = pathlib.Path({plan!r})
STATE = pathlib.Path({state!r})

plan = json.loads(PLAN.read_text())
target = sys.argv[-1]
host = target.split(":", 1)[0].rsplit("@", 1)[-1]
counter = STATE / (host.replace("/", "_") + ".count")
n = int(counter.read_text()) + 1 if counter.exists() else 1
counter.write_text(str(n))
events = STATE / "events.log"
with events.open("a") as fh:
    fh.write("start %s %.6f\\n" % (host, time.time()))
(STATE / (host.replace("/", "_") + ".argv")).write_text(json.dumps(sys.argv[1:]))
steps = plan["hosts"].get(host, [[0, ""]])
code, text = steps[min(n, len(steps)) - 1]
time.sleep(plan.get("sleep", 0))
if text:
    print(text, flush=True)
with events.open("a") as fh:
    fh.write("end %s %.6f\\n" % (host, time.time()))
sys.exit(code)
"""


class FakeScp:
    def __init__(self, program, state_dir):
        self.program = program
        self.state_dir = state_dir

    def attempts(self, host):
        counter = self.state_dir / f"{host}.count"
        return int(counter.read_text()) if counter.exists() else 0

    def argv(self, host):
        return json.loads((self.state_dir / f"{host}.argv").read_text())

    def intervals(self):
        """Return (host, start, end) per attempt, ordered by start time."""
        events = self.state_dir / "events.log"
        starts = {}
        out = []
        for line in events.read_text().splitlines():
            kind, host, ts = line.split()
            if kind == "start":
                starts.setdefault(host, []).append(float(ts))
            else:
                out.append((host, starts[host].pop(0), float(ts)))
        return sorted(out, key=lambda item: item[1])


@pytest.fixture
def fake_scp(tmp_path):
    """Factory writing an executable that behaves like scp per host and attempt.

    ``hosts`` maps a host to a list of ``(exit_code, output)`` per attempt;
    the last entry repeats and unknown hosts succeed silently.
    """

    def _factory(hosts=None, sleep=0.0):
        state_dir = tmp_path / "fake_scp_state"
        state_dir.mkdir(exist_ok=True)
        plan = tmp_path / "fake_scp_plan.json"
        plan.write_text(json.dumps({"hosts": hosts or {}, "sleep": sleep}))
        program = tmp_path / "fake-scp"
        program.write_text(
            _FAKE_SCP_SOURCE.format(python=sys.executable, plan=str(plan), state=str(state_dir))
        )
        program.chmod(program.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return FakeScp(program, state_dir)

    return _factory


@pytest.fixture
def artifact_dir(tmp_path):
    d = tmp_path / "artifacts"
    d.mkdir()
    return d


@pytest.fixture
def make_job(tmp_path, artifact_dir):
    """Factory for a TransferJob copying a small local file."""

    def _factory(program="scp", options=None, password=None, user="deploy"):
        source = tmp_path / "bundle.tar"
        if not source.exists():
            source.write_bytes(b"\x00" * 32)
        return TransferJob(
            scp_options=list(options or []),
            source=str(source),
            destination="/opt/app/",
            user=user,
            artifact_dir=str(artifact_dir),
            timeout=5,
            scp_program=str(program),
            password=password,
        )

    return _factory


@pytest.fixture
def hosts_file_factory(tmp_path):
    """Factory that writes a hosts file and returns its Path."""

    def _factory(content: str, filename: str = "hosts.txt") -> pathlib.Path:
        p = tmp_path / filename
        p.write_text(textwrap.dedent(content), encoding="utf-8")
        return p

    return _factory

