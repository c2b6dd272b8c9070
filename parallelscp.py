#!/usr/bin/env python3
"""
MIT No Attribution License (MIT-0)

Copyright (c) 2026 Scott Morrison

Permission is hereby granted, free of charge, to any person obtaining a copy of this
software and associated documentation files (the "Software"), to deal in the Software
without restriction, including without limitation the rights to use, copy, modify,
merge, publish, distribute, sublicense, and/or sell copies of the Software, and to
permit persons to whom the Software is furnished to do so.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR IMPLIED,
INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS FOR A
PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT
HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN ACTION OF
CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR
THE USE OR OTHER DEALINGS IN THE SOFTWARE.
"""

from __future__ import annotations

import dataclasses
import getpass
import multiprocessing
import os
import re
import shlex
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field
from multiprocessing.connection import wait as wait_for_sentinels
from pathlib import Path
from typing import Callable, Iterable, Protocol

# scp single-letter options that consume a value.
SCP_OPTS_WITH_VALUE = {"-c", "-F", "-i", "-l", "-o", "-P", "-S"}
SCP_OPTS_NO_VALUE = {"-1", "-2", "-3", "-4", "-6", "-B", "-C", "-p", "-q", "-r", "-v"}
VERSION = "ParallelSCP/1.0.0"

DEFAULT_TIMEOUT = 30
DEFAULT_MAX_PARALLEL = 10
DEFAULT_RETRY = 0

ADMISSION_POLL_INTERVAL = 0.1
DRAIN_POLL_INTERVAL = 0.5
RETRY_ROUND_PAUSE = 2.0
# Read interval for expect, longer than the ssh connect timeout. A quiet
# transfer is never cut short: expect keeps reading until the transfer exits.
EXPECT_TIMEOUT_SLACK = 30

PENDING = "pending"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"

# Phrases that mark a transfer as failed even when scp exits 0.
CRITICAL_ERROR_PHRASES = (
    "permission denied",
    "connection refused",
    "no such file or directory",
    "host key verification failed",
    "operation timed out",
    "authentication failed",
)
_UNSAFE_KEY_CHARS_RE = re.compile(r"[^A-Za-z0-9]")
_DIGITS_RE = re.compile(r"[0-9]+")
_EXPECT_EXIT_RE = re.compile(r"EXPECT_EXIT_CODE:([0-9]+)")

_EXPECT_SCRIPT = r"""set timeout $env(PSCP_TIMEOUT)
log_user 1
spawn -noecho {*}$argv
expect {
    -nocase "password:" {
        send -- "$env(PSCP_PASSWORD)\r"
        exp_continue
    }
    "(yes/no" {
        send -- "yes\r"
        exp_continue
    }
    "Are you sure" {
        send -- "yes\r"
        exp_continue
    }
    timeout {
        exp_continue
    }
    eof
}
catch wait result
puts "\nEXPECT_EXIT_CODE:[lindex $result 3]"
"""

Classifier = Callable[[int, str], int]


class TaskHandle(Protocol):
    """What the scheduler needs from a running task (a multiprocessing.Process)."""

    pid: int | None
    sentinel: int

    def is_alive(self) -> bool: ...

    def join(self, timeout: float | None = None) -> None: ...


@dataclass
class PscpOptions:
    hosts_file: str | None = None
    user: str = ""
    timeout: int = DEFAULT_TIMEOUT
    max_parallel: int = DEFAULT_MAX_PARALLEL
    password: str | None = None
    ask_pass: bool = False
    retry_limit: int = DEFAULT_RETRY
    dry_run: bool = False
    debug: bool = False
    log_dir: str | None = None
    scp_program: str = "scp"
    show_help: bool = False
    show_version: bool = False


@dataclass
class TransferJob:
    """Everything one transfer attempt needs that is shared by all hosts."""

    scp_options: list[str]
    source: str
    destination: str
    user: str
    artifact_dir: str
    timeout: int = DEFAULT_TIMEOUT
    scp_program: str = "scp"
    password: str | None = field(default=None, repr=False)


@dataclass(eq=False)
class HostRecord:
    """One entry of the host list, tracked through all of its attempts."""

    name: str
    artifact_key: str
    attempt: int = 0
    status: str = PENDING


@dataclass
class Tally:
    success_count: int = 0
    fail_count: int = 0
    completed_hosts: list[HostRecord] = field(default_factory=list)
    failed_hosts: list[HostRecord] = field(default_factory=list)


class WorkerSlots:
    """Admission tokens for the initial dispatch pass, keyed by task pid."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise RuntimeError("max parallel must be >= 1")
        self.capacity = capacity
        self._held: set[int] = set()

    @property
    def in_use(self) -> int:
        return len(self._held)

    def available(self) -> bool:
        return len(self._held) < self.capacity

    def acquire(self, token: int) -> None:
        if token in self._held:
            raise RuntimeError(f"slot already held by pid {token}")
        if not self.available():
            raise RuntimeError(f"no free worker slot for pid {token}")
        self._held.add(token)

    def release(self, token: int) -> bool:
        """Free the slot held by token; False when it holds none."""

        if token not in self._held:
            return False
        self._held.remove(token)
        return True


@dataclass
class SchedulerState:
    """Bookkeeping owned by the single orchestrating control flow."""

    records: list[HostRecord]
    artifact_dir: Path
    slots: WorkerSlots
    active: list[TaskHandle] = field(default_factory=list)
    reverse: dict[int, HostRecord] = field(default_factory=dict)
    tally: Tally = field(default_factory=Tally)


@dataclass
class RunReport:
    succeeded: list[str]
    failed: list[str]
    success_count: int
    fail_count: int
    total: int
    missing: int = 0
    retained_logs: list[Path] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 0 if self.fail_count == 0 else 1


def _usage_text() -> str:
    """Return CLI help text shared by --help and argument error paths."""

    return (
        "usage: parallel-scp [-12346BCpqrv] [-c cipher] [-F ssh_config] [-i identity_file]\n"
        "                    [-l limit] [-o ssh_option] [-P port] [-S program]\n"
        "                    -h hosts_file [-u user] [-t timeout] [--max-parallel n]\n"
        "                    [--retry n] [--password pass | --ask-pass] [--dry-run]\n"
        "                    [--debug] [--log-dir dir] [--scp-program path] [-V]\n"
        "                    source destination\n\n"
        "parallel options:\n"
        "  -h, --hosts FILE        file with one host per line (required)\n"
        "  -u, --user USER         ssh user name (default: $USER)\n"
        f"  -t, --timeout SEC       ssh connect timeout (default: {DEFAULT_TIMEOUT})\n"
        f"      --max-parallel N    concurrent transfers on the first pass (default: {DEFAULT_MAX_PARALLEL})\n"
        f"      --retry N           retry rounds for failed hosts (default: {DEFAULT_RETRY})\n"
        "      --password PASS     ssh password, answered through expect (not secure)\n"
        "      --ask-pass          prompt once for the ssh password\n"
        "      --dry-run           show what would be done and exit\n"
        "      --debug             print scheduler decisions to stderr\n"
        "      --log-dir DIR       where per-host logs are written (default: system temp dir)\n"
        "      --scp-program PATH  transfer program to run (default: scp)\n"
        "      --help              show this help and exit\n"
        "  -V, --version           show parallel-scp version and exit\n\n"
        "notes:\n"
        "  the scp options above are passed through to every transfer\n"
        "  destination is a remote path; it is copied to USER@HOST:destination for each host\n"
        "  per-host logs are removed after the run unless -v is given\n"
    )


def _status(msg: str, quiet: bool = False) -> None:
    """Emit a namespaced status line unless quiet mode is active."""

    if not quiet:
        print(f"[pscp] {msg}", flush=True)


def _debug(msg: str, debug: bool = False) -> None:
    if debug:
        print(f"[pscp:debug] {msg}", file=sys.stderr, flush=True)


def _clock() -> str:
    return time.strftime("%H:%M:%S")


def _sanitize_host(host: str) -> str:
    """Replace every non-alphanumeric character so a host can name a file."""

    return _UNSAFE_KEY_CHARS_RE.sub("_", host)


def _log_path(artifact_dir: Path, key: str, attempt: int) -> Path:
    return Path(artifact_dir) / f"pscp_{key}_{attempt}.log"


def _result_path(artifact_dir: Path, key: str, attempt: int) -> Path:
    return Path(artifact_dir) / f"pscp_exit_{key}_{attempt}.code"


def _expect_script_path(artifact_dir: Path, key: str, attempt: int) -> Path:
    return Path(artifact_dir) / f"pscp_expect_{key}_{attempt}.exp"


def _append_log(log_path: Path, msg: str, truncate: bool = False) -> None:
    with log_path.open("w" if truncate else "a", encoding="utf-8") as fh:
        fh.write(f"[{_clock()}] {msg}\n")


def _normalize_returncode(code: int) -> int:
    # subprocess reports death by signal N as -N; keep results non-negative.
    if code < 0:
        return 128 - code
    return code


def publish_result(path: Path, status: int) -> None:
    """Atomically publish a task's final status so readers never see a partial value."""

    path = Path(path)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(f"{status}\n", encoding="utf-8")
    os.replace(tmp, path)


def consume_result(path: Path) -> int:
    """Read and remove a published status.

    A missing, unreadable or non-numeric entry reads as 1: an outcome that
    cannot be confirmed is never reported as a success.
    """

    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except OSError:
        return 1
    path.unlink(missing_ok=True)
    if not _DIGITS_RE.fullmatch(raw):
        return 1
    return int(raw)


def classify_transfer(exit_code: int, log_text: str) -> int:
    """Return the final status of an attempt from its exit code and transcript.

    scp can exit 0 after printing a real error, so a clean exit is only
    trusted when no non-debug line of the log carries a known failure phrase.
    """

    if exit_code != 0:
        return exit_code
    for line in log_text.splitlines():
        if line.startswith("debug1:"):
            continue
        lowered = line.lower()
        if any(phrase in lowered for phrase in CRITICAL_ERROR_PHRASES):
            return 1
        # "scp:" followed anywhere later on the line by "error".
        start = lowered.find("scp:")
        if start != -1 and "error" in lowered[start + 4:]:
            return 1
    return 0


def build_transfer_command(job: TransferJob, host: str) -> list[str]:
    """Build the scp argv for one host; operands follow ``--`` so a host cannot inject options."""

    target = f"{job.user}@{host}:{job.destination}" if job.user else f"{host}:{job.destination}"
    return [job.scp_program, *job.scp_options, "--", job.source, target]


def _run_direct(cmd: list[str], log_path: Path) -> int:
    """Run cmd with stdout and stderr appended to log_path."""

    try:
        with log_path.open("a", encoding="utf-8") as log:
            # A new session has no controlling tty, so ssh fails instead of prompting.
            p = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
    except OSError as e:
        _append_log(log_path, f"failed to start {cmd[0]}: {e}")
        return 127
    return _normalize_returncode(p.returncode)


def _parse_expect_exit_code(log_text: str) -> int | None:
    found = _EXPECT_EXIT_RE.findall(log_text)
    if not found:
        return None
    return int(found[-1])


def _run_with_credential(job: TransferJob, cmd: list[str], script_path: Path, log_path: Path) -> int:
    """Run cmd under expect, answering password and host-key prompts.

    The password travels through the environment only; the generated script
    holds no secret and is removed before returning.
    """

    env = dict(os.environ)
    env["PSCP_PASSWORD"] = job.password or ""
    env["PSCP_TIMEOUT"] = str(job.timeout + EXPECT_TIMEOUT_SLACK)
    try:
        fd = os.open(script_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(_EXPECT_SCRIPT)
        with log_path.open("a", encoding="utf-8") as log:
            p = subprocess.run(
                ["expect", "--", str(script_path), *cmd],
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                env=env,
            )
    except OSError as e:
        _append_log(log_path, f"failed to run expect: {e}")
        return 127
    finally:
        script_path.unlink(missing_ok=True)

    exit_code = _normalize_returncode(p.returncode)
    driver_code = _parse_expect_exit_code(log_path.read_text(encoding="utf-8", errors="replace"))
    if driver_code is not None:
        exit_code = driver_code
    return exit_code


def run_transfer_task(
    job: TransferJob,
    host: str,
    key: str,
    attempt: int,
    classifier: Classifier = classify_transfer,
) -> int:
    """Run one transfer attempt for one host and publish its final status."""

    artifact_dir = Path(job.artifact_dir)
    log_path = _log_path(artifact_dir, key, attempt)
    _append_log(log_path, f"Attempt {attempt}: {host}", truncate=True)

    cmd = build_transfer_command(job, host)
    if job.password:
        exit_code = _run_with_credential(job, cmd, _expect_script_path(artifact_dir, key, attempt), log_path)
    else:
        exit_code = _run_direct(cmd, log_path)
    _append_log(log_path, f"Completed: {host} (Exit: {exit_code})")

    final = classifier(exit_code, log_path.read_text(encoding="utf-8", errors="replace"))
    if final != exit_code:
        _append_log(log_path, f"Critical error detected, exit code changed to {final}")
    publish_result(_result_path(artifact_dir, key, attempt), final)
    _append_log(log_path, f"Final exit code: {final}")
    return final


class ProcessLauncher:
    """Start every transfer attempt in its own OS process."""

    def __init__(self, job: TransferJob, classifier: Classifier = classify_transfer) -> None:
        self.job = job
        self.classifier = classifier
        self._ctx = multiprocessing.get_context("spawn")

    def launch(self, record: HostRecord, attempt: int) -> TaskHandle:
        proc = self._ctx.Process(
            target=run_transfer_task,
            args=(self.job, record.name, record.artifact_key, attempt, self.classifier),
            name=f"pscp-{record.artifact_key}-{attempt}",
        )
        proc.start()
        return proc

    def wait(self, handles: list[TaskHandle], timeout: float) -> None:
        """Block until any handle finishes or timeout elapses."""

        if not handles:
            time.sleep(timeout)
            return
        wait_for_sentinels([h.sentinel for h in handles], timeout=timeout)


def _assign_records(hosts: Iterable[str]) -> list[HostRecord]:
    """Create host records whose artifact keys are unique even when names collide."""

    records: list[HostRecord] = []
    used: set[str] = set()
    for host in hosts:
        base = _sanitize_host(host)
        key = base
        n = 1
        while key in used:
            n += 1
            key = f"{base}__{n}"
        used.add(key)
        records.append(HostRecord(name=host, artifact_key=key))
    return records


def new_scheduler_state(hosts: Iterable[str], artifact_dir: Path, max_parallel: int) -> SchedulerState:
    return SchedulerState(
        records=_assign_records(hosts),
        artifact_dir=Path(artifact_dir),
        slots=WorkerSlots(max_parallel),
    )


def _record_outcome(tally: Tally, record: HostRecord, status: int) -> bool:
    if status == 0:
        record.status = SUCCEEDED
        tally.success_count += 1
        tally.completed_hosts.append(record)
        return True
    record.status = FAILED
    tally.fail_count += 1
    tally.failed_hosts.append(record)
    return False


def _register_task(state: SchedulerState, handle: TaskHandle, record: HostRecord) -> None:
    pid = handle.pid
    if pid is None:
        raise RuntimeError(f"cannot track {record.name}: task has no pid")
    state.slots.acquire(pid)
    state.reverse[pid] = record
    state.active.append(handle)
    record.status = RUNNING


def reap_completed(state: SchedulerState, quiet: bool = False, debug: bool = False) -> int:
    """Classify every finished outstanding task and free its slot.

    Safe to call repeatedly: a handle leaves the active list the first time
    it is seen finished, so no outcome is counted and no slot released twice.
    """

    still_running: list[TaskHandle] = []
    reaped = 0
    for handle in state.active:
        if handle.is_alive():
            still_running.append(handle)
            continue
        reaped += 1
        pid = handle.pid
        if pid is not None and not state.slots.release(pid):
            _debug(f"pid {pid} finished without holding a slot", debug)
        record = state.reverse.pop(pid, None) if pid is not None else None
        if record is None:
            # Cannot be attributed to a host; count it so the totals still add up.
            _status(f"orphan process finished: pid {pid}", quiet=quiet)
            state.tally.fail_count += 1
            continue
        status = consume_result(_result_path(state.artifact_dir, record.artifact_key, record.attempt))
        _debug(f"pid {pid} -> {record.name} status={status}", debug)
        if _record_outcome(state.tally, record, status):
            _status(f"SUCCESS: {record.name}", quiet=quiet)
        else:
            _status(f"ERROR: {record.name} (exit code: {status})", quiet=quiet)
    state.active = still_running
    return reaped


def dispatch_initial_pass(
    state: SchedulerState,
    launcher: ProcessLauncher,
    quiet: bool = False,
    debug: bool = False,
    admission_interval: float = ADMISSION_POLL_INTERVAL,
    drain_interval: float = DRAIN_POLL_INTERVAL,
) -> None:
    """Launch one attempt per host, never holding more than the slot capacity."""

    cap = state.slots.capacity
    for record in state.records:
        while not state.slots.available():
            launcher.wait(state.active, admission_interval)
            reap_completed(state, quiet=quiet, debug=debug)

        record.attempt = 1
        try:
            handle = launcher.launch(record, 1)
        except OSError as e:
            _status(f"ERROR: could not start transfer for {record.name}: {e}", quiet=quiet)
            _record_outcome(state.tally, record, 1)
            continue
        if handle.pid is None:
            _status(f"ERROR: invalid pid for {record.name}", quiet=quiet)
            _record_outcome(state.tally, record, 1)
            continue

        _register_task(state, handle, record)
        _status(f"started: {record.name} (pid={handle.pid}) [active: {state.slots.in_use}/{cap}]", quiet=quiet)

    if state.active:
        _status("completing remaining transfers...", quiet=quiet)
    last_pending = len(state.active)
    while state.active:
        launcher.wait(state.active, drain_interval)
        reap_completed(state, quiet=quiet, debug=debug)
        if state.active and len(state.active) != last_pending:
            _status(f"pending processes: {len(state.active)}", quiet=quiet)
        last_pending = len(state.active)


def run_retry_rounds(
    state: SchedulerState,
    launcher: ProcessLauncher,
    retry_limit: int,
    quiet: bool = False,
    debug: bool = False,
    pause: float = RETRY_ROUND_PAUSE,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Re-run failed hosts in up to retry_limit rounds and return how many recovered.

    Every host of a round is launched at once; the max-parallel cap only
    governs the initial pass.
    """

    tally = state.tally
    pending = list(tally.failed_hosts)
    recovered = 0
    if retry_limit > 0 and pending:
        _status(f"retrying failed transfers (max {retry_limit} rounds)...", quiet=quiet)

    for round_no in range(1, retry_limit + 1):
        if not pending:
            break
        attempt = round_no + 1
        _status(f"retry round {round_no}/{retry_limit}: {len(pending)} hosts remaining", quiet=quiet)

        launched: list[tuple[TaskHandle | None, HostRecord]] = []
        for record in pending:
            record.attempt = attempt
            record.status = RUNNING
            _status(f"retrying: {record.name} (attempt {attempt})", quiet=quiet)
            try:
                launched.append((launcher.launch(record, attempt), record))
            except OSError as e:
                _status(f"ERROR: could not start retry for {record.name}: {e}", quiet=quiet)
                launched.append((None, record))

        pending = []
        for handle, record in launched:
            status = 1
            if handle is not None:
                handle.join()
                status = consume_result(_result_path(state.artifact_dir, record.artifact_key, attempt))
            _debug(f"retry {record.name} attempt={attempt} status={status}", debug)
            if status == 0:
                tally.failed_hosts.remove(record)
                tally.fail_count -= 1
                tally.success_count += 1
                tally.completed_hosts.append(record)
                record.status = SUCCEEDED
                recovered += 1
                _status(f"SUCCESS (retry): {record.name}", quiet=quiet)
            else:
                record.status = FAILED
                pending.append(record)
                _status(f"ERROR (retry): {record.name} (exit code: {status})", quiet=quiet)

        if pending and round_no < retry_limit:
            _status(f"waiting {pause:g} seconds...", quiet=quiet)
            sleep(pause)

    if recovered:
        _status(f"{recovered} hosts succeeded after retry", quiet=quiet)
    return recovered


def aggregate_results(state: SchedulerState, quiet: bool = False) -> RunReport:
    """Reconcile the tallies so every host is counted as a success or a failure."""

    tally = state.tally
    total = len(state.records)
    missing = total - (tally.success_count + tally.fail_count)
    if missing > 0:
        _status(f"{missing} hosts could not be processed (timeout or unexpected error)", quiet=quiet)
        tally.fail_count += missing

    # Hosts whose task vanished as an orphan are already counted; list them too.
    for record in state.records:
        if record.status not in (SUCCEEDED, FAILED):
            record.status = FAILED
            tally.failed_hosts.append(record)

    return RunReport(
        succeeded=[r.name for r in tally.completed_hosts],
        failed=[r.name for r in tally.failed_hosts],
        success_count=tally.success_count,
        fail_count=tally.fail_count,
        total=total,
        missing=max(0, missing),
    )


def finalize_artifacts(state: SchedulerState, keep: bool) -> list[Path]:
    """Remove every per-host artifact, or keep them and return the log paths."""

    kept: list[Path] = []
    for record in state.records:
        for attempt in range(1, record.attempt + 1):
            log_path = _log_path(state.artifact_dir, record.artifact_key, attempt)
            result_path = _result_path(state.artifact_dir, record.artifact_key, attempt)
            if keep:
                if log_path.is_file():
                    kept.append(log_path)
                continue
            for path in (
                log_path,
                result_path,
                result_path.with_name(result_path.name + ".tmp"),
                _expect_script_path(state.artifact_dir, record.artifact_key, attempt),
            ):
                path.unlink(missing_ok=True)
    return kept


def _print_report(report: RunReport, state: SchedulerState) -> None:
    print("")
    print("RESULTS:")
    print("========")
    if report.success_count > 0:
        print(f"SUCCESSFUL ({report.success_count}):")
        for name in report.succeeded:
            print(f"   {name}")
    if report.fail_count > 0:
        print("")
        print(f"FAILED ({report.fail_count}):")
        # A repeated host is listed once per entry, each with its own logs.
        for record in state.tally.failed_hosts:
            if report.retained_logs:
                pattern = state.artifact_dir / f"pscp_{record.artifact_key}_*.log"
                print(f"   {record.name} (log: {pattern})")
            else:
                print(f"   {record.name}")
    print("")
    print("SUMMARY:")
    print(f"Successful: {report.success_count}")
    print(f"Failed: {report.fail_count}")
    print(f"Total: {report.total} hosts")
    if report.retained_logs:
        print("")
        print(f"Log files kept in {state.artifact_dir}:")
        for path in report.retained_logs:
            print(f"   {path}")
    sys.stdout.flush()


def orchestrate(
    hosts: list[str],
    job: TransferJob,
    *,
    max_parallel: int,
    retry_limit: int,
    keep_artifacts: bool = False,
    quiet: bool = False,
    debug: bool = False,
    launcher: ProcessLauncher | None = None,
    retry_pause: float = RETRY_ROUND_PAUSE,
) -> RunReport:
    """Transfer to every host, retry failures and print the final report."""

    if not hosts:
        raise RuntimeError("No valid hosts to process")
    if retry_limit < 0:
        raise RuntimeError("retry count must be >= 0")
    state = new_scheduler_state(hosts, Path(job.artifact_dir), max_parallel)
    if launcher is None:
        launcher = ProcessLauncher(job)

    dispatch_initial_pass(state, launcher, quiet=quiet, debug=debug)
    if retry_limit > 0 and state.tally.fail_count > 0:
        run_retry_rounds(state, launcher, retry_limit, quiet=quiet, debug=debug, pause=retry_pause)

    report = aggregate_results(state, quiet=quiet)
    report.retained_logs = finalize_artifacts(state, keep=keep_artifacts)
    _print_report(report, state)
    return report


def _option_value(argv: list[str], i: int, name: str) -> str:
    if i + 1 >= len(argv):
        raise RuntimeError(f"{name} requires a value")
    return argv[i + 1]


def _parse_int(raw: str, name: str) -> int:
    # Plain decimal digits only; int() would also take "+3", "1_0" and " 5 ".
    if not _DIGITS_RE.fullmatch(raw):
        raise RuntimeError(f"Invalid {name} value: {raw}")
    return int(raw)


def _extract_pscp_options(argv: list[str]) -> tuple[PscpOptions, list[str]]:
    """Parse parallel-scp flags and return remaining native scp args."""

    opts = PscpOptions(user=os.environ.get("USER", ""))
    with_value = {
        "-h": "hosts_file",
        "--hosts": "hosts_file",
        "-u": "user",
        "--user": "user",
        "-t": "timeout",
        "--timeout": "timeout",
        "--max-parallel": "max_parallel",
        "--password": "password",
        "--retry": "retry_limit",
        "--log-dir": "log_dir",
        "--scp-program": "scp_program",
    }
    int_fields = {"timeout", "max_parallel", "retry_limit"}
    flags = {
        "--ask-pass": "ask_pass",
        "--dry-run": "dry_run",
        "--debug": "debug",
        "--help": "show_help",
        "--version": "show_version",
        "-V": "show_version",
    }
    out: list[str] = []

    i = 0
    while i < len(argv):
        a = argv[i]
        name, raw = a, None
        if a.startswith("--") and "=" in a:
            name, raw = a.split("=", 1)
        if name in with_value:
            if raw is None:
                raw = _option_value(argv, i, name)
                i += 1
            attr = with_value[name]
            setattr(opts, attr, _parse_int(raw, name) if attr in int_fields else raw)
        elif a in flags:
            setattr(opts, flags[a], True)
        else:
            out.append(a)
        i += 1

    if opts.max_parallel < 1:
        raise RuntimeError("Max parallel value must be a positive number")
    if opts.timeout < 1:
        raise RuntimeError("Timeout must be a positive number of seconds")
    if opts.ask_pass and opts.password:
        raise RuntimeError("--ask-pass and --password cannot be used together")
    return opts, out


def _validate_scp_args(args: list[str]) -> None:
    """Reject unsupported or malformed scp flags before invoking scp."""

    end_of_opts = False
    i = 0
    while i < len(args):
        token = args[i]
        if end_of_opts or not token.startswith("-") or token == "-":
            i += 1
            continue
        if token == "--":
            end_of_opts = True
            i += 1
            continue
        if token.startswith("--"):
            raise RuntimeError(f"Unsupported long option: {token}")

        if token in SCP_OPTS_WITH_VALUE:
            if i + 1 >= len(args):
                raise RuntimeError(f"Option requires a value: {token}")
            i += 2
            continue
        if token in SCP_OPTS_NO_VALUE:
            i += 1
            continue

        # Compact clusters like -rC, with an optional trailing value option (-rP2222, -rP 2222).
        consumed_next = False
        for pos in range(1, len(token)):
            short = f"-{token[pos]}"
            if short in SCP_OPTS_NO_VALUE:
                continue
            if short in SCP_OPTS_WITH_VALUE:
                if pos == len(token) - 1:
                    if i + 1 >= len(args):
                        raise RuntimeError(f"Option requires a value: {short}")
                    consumed_next = True
                break
            raise RuntimeError(f"Unsupported scp option: {short}")
        i += 2 if consumed_next else 1


def _parse_scp_args(args: list[str]) -> list[int]:
    """Locate the operand indexes in an scp argument list."""

    operand_indexes: list[int] = []
    end_of_opts = False
    i = 0
    while i < len(args):
        token = args[i]
        if end_of_opts or not token.startswith("-") or token == "-":
            operand_indexes.append(i)
            i += 1
            continue
        if token == "--":
            end_of_opts = True
            i += 1
            continue
        if token in SCP_OPTS_WITH_VALUE:
            i += 2
            continue
        if len(token) > 2:
            for pos in range(1, len(token)):
                if f"-{token[pos]}" in SCP_OPTS_WITH_VALUE:
                    if pos == len(token) - 1:
                        i += 1
                    break
        i += 1
    return operand_indexes


def _has_short_flag(args: list[str], short_flag: str) -> bool:
    """Return True when a short flag appears in stand-alone or compact form."""

    i = 0
    while i < len(args):
        token = args[i]
        if token == "--":
            return False
        if token == short_flag:
            return True
        if token.startswith("-") and len(token) > 2 and not token.startswith("--"):
            # Stop before any attached value segment (e.g. -i/path).
            for pos in range(1, len(token)):
                short = f"-{token[pos]}"
                if short not in SCP_OPTS_NO_VALUE:
                    break
                if short == short_flag:
                    return True
        if token in SCP_OPTS_WITH_VALUE:
            i += 2
            continue
        i += 1
    return False


def _has_connect_timeout(args: list[str]) -> bool:
    for i, token in enumerate(args):
        value = None
        if token == "-o" and i + 1 < len(args):
            value = args[i + 1]
        elif token.startswith("-o") and len(token) > 2:
            value = token[2:]
        if value is not None and "connecttimeout" in value.lower():
            return True
    return False


def _with_connect_timeout(args: list[str], timeout: int) -> list[str]:
    """Return args with an ssh ConnectTimeout added unless one is already set."""

    if _has_connect_timeout(args):
        return list(args)
    return [*args, "-o", f"ConnectTimeout={timeout}"]


def _read_hosts_file(path: Path) -> list[str]:
    """Read one host per line, skipping blank and comment lines; duplicates are kept."""

    try:
        lines = path.read_text(encoding="utf-8-sig", errors="replace").splitlines()
    except OSError as e:
        raise RuntimeError(f"Failed to read hosts file {path}: {e}") from e
    hosts: list[str] = []
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        hosts.append(line)
    return hosts


def _build_run_config(opts: PscpOptions, scp_args: list[str]) -> tuple[list[str], TransferJob]:
    """Validate everything a run needs before any transfer is started."""

    if not opts.hosts_file:
        raise RuntimeError("Hosts file not specified (-h/--hosts)")
    _validate_scp_args(scp_args)
    operands = _parse_scp_args(scp_args)
    if len(operands) < 2:
        raise RuntimeError("Source and destination paths not specified")
    if len(operands) > 2:
        raise RuntimeError(f"Too many parameters: {scp_args[operands[2]]}")

    hosts_file = Path(opts.hosts_file).expanduser()
    if not hosts_file.is_file():
        raise RuntimeError(f"Hosts file not found: {hosts_file}")
    source = scp_args[operands[0]]
    if not Path(source).expanduser().exists():
        raise RuntimeError(f"Source file/directory not found: {source}")

    hosts = _read_hosts_file(hosts_file)
    if not hosts:
        raise RuntimeError("No valid hosts found in hosts file")

    artifact_dir = Path(opts.log_dir).expanduser() if opts.log_dir else Path(tempfile.gettempdir())
    try:
        artifact_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise RuntimeError(f"Failed to create log directory {artifact_dir}: {e}") from e

    scp_options = [arg for idx, arg in enumerate(scp_args) if idx not in operands and arg != "--"]
    job = TransferJob(
        scp_options=_with_connect_timeout(scp_options, opts.timeout),
        source=source,
        destination=scp_args[operands[1]],
        user=opts.user,
        artifact_dir=str(artifact_dir),
        timeout=opts.timeout,
        scp_program=opts.scp_program,
        password=opts.password,
    )
    return hosts, job


def _print_dry_run(hosts: list[str], job: TransferJob, opts: PscpOptions) -> None:
    preview = build_transfer_command(job, "HOST")
    print("DRY RUN - showing only, no transfers will be started")
    print("")
    print(f"Hosts to process ({len(hosts)} total):")
    for host in hosts:
        print(f"   {host}")
    print("")
    print("Command to execute:")
    print(f"   {' '.join(shlex.quote(x) for x in preview)}")
    print("")
    print("Settings:")
    print(f"   User: {job.user}")
    print(f"   Timeout: {job.timeout}s")
    print(f"   Max Parallel: {opts.max_parallel}")
    print(f"   Retry: {opts.retry_limit}")
    print(f"   Password: {'yes' if (opts.password or opts.ask_pass) else 'no'}")
    print(f"   Log directory: {job.artifact_dir}")


def main() -> int:
    """CLI entrypoint for parallel-scp."""

    argv = sys.argv[1:]
    if not argv:
        print(_usage_text())
        return 0

    try:
        opts, scp_args = _extract_pscp_options(argv)
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if opts.show_help:
        print(_usage_text())
        return 0
    if opts.show_version:
        print(VERSION)
        return 0

    try:
        hosts, job = _build_run_config(opts, scp_args)
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Use --help for usage", file=sys.stderr)
        return 2

    if opts.dry_run:
        _print_dry_run(hosts, job, opts)
        return 0

    if opts.ask_pass:
        job = dataclasses.replace(job, password=getpass.getpass("SSH password: "))

    quiet = _has_short_flag(job.scp_options, "-q")
    keep_artifacts = _has_short_flag(job.scp_options, "-v")
    _status(
        (
            f"starting parallel scp: source={job.source}, destination={job.destination}, user={job.user}, "
            f"hosts={len(hosts)}, max_parallel={opts.max_parallel}, retry={opts.retry_limit}, "
            f"timeout={job.timeout}s"
        ),
        quiet=quiet,
    )
    _debug(f"scp options: {' '.join(shlex.quote(x) for x in job.scp_options)}", opts.debug)

    try:
        report = orchestrate(
            hosts,
            job,
            max_parallel=opts.max_parallel,
            retry_limit=opts.retry_limit,
            keep_artifacts=keep_artifacts,
            quiet=quiet,
            debug=opts.debug,
        )
    except RuntimeError as e:
        print(str(e), file=sys.stderr)
        return 1
    return report.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
