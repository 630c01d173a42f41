"""
Runs configured probe scripts under interval gating and a hard timeout.
"""

import os
import shlex
import signal
import subprocess
import sys
import time
from typing import Dict, List, Optional, Sequence, Tuple

import psutil

from logcore import get_logger
from telemetry_agent.collectors import Collector
from telemetry_agent.models import CollectorKind, ScriptJob, ScriptMetrics, ScriptResult

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30
NO_EXIT_CODE = -1
KILL_GRACE_SECONDS = 2


class ScriptExecutor(Collector):
    """
    Executes each eligible job once per cycle.

    A job is skipped while fewer than `interval` seconds have passed since
    it last ran; interval <= 0 means it runs every cycle. Last run times are
    kept here, keyed by job id, and only touched for jobs that actually ran.
    """

    kind = CollectorKind.SCRIPT

    def __init__(self, jobs: Sequence[ScriptJob], clock=time.time):
        self.jobs = list(jobs)
        self._clock = clock
        self._last_run: Dict[str, float] = {}

    def last_run(self, job_id: str) -> float:
        return self._last_run.get(job_id, 0)

    def is_due(self, job: ScriptJob, now: float) -> bool:
        last = self.last_run(job.id)
        if job.interval > 0 and last > 0:
            return now - last >= job.interval
        return True

    def collect(self) -> ScriptMetrics:
        now = self._clock()
        metrics = ScriptMetrics()

        for job in self.jobs:
            if not self.is_due(job, now):
                continue

            result = run_script(job)
            metrics.results.append(result)
            self._last_run[job.id] = now

            if not result.success:
                logger.warning(
                    f"Script {job.name} failed with exit code {result.exit_code}",
                    extra={'context': {
                        'component': 'script',
                        'script_id': job.id,
                        'duration_ms': result.duration_ms,
                    }}
                )

        return metrics


def build_command(job: ScriptJob) -> List[str]:
    """Shell invocation for a job, arguments quoted for the shell"""
    if sys.platform == 'win32':
        return ['cmd', '/c', subprocess.list2cmdline([job.command, *job.args])]
    line = ' '.join([job.command] + [shlex.quote(arg) for arg in job.args])
    return ['sh', '-c', line]


def run_script(job: ScriptJob) -> ScriptResult:
    """Run one job, never raising; failures become a failed result"""
    timeout = job.timeout if job.timeout > 0 else DEFAULT_TIMEOUT
    started = time.time()
    start_monotonic = time.monotonic()

    stdout = ''
    stderr = ''
    exit_code: Optional[int] = None
    exec_error: Optional[str] = None

    try:
        proc = subprocess.Popen(
            build_command(job),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors='replace',
            start_new_session=(sys.platform != 'win32')
        )
    except OSError as e:
        exec_error = f"failed to start: {e}"
    else:
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
            exit_code = proc.returncode
            if exit_code != 0:
                exec_error = f"exit status {exit_code}"
        except subprocess.TimeoutExpired:
            _kill(proc)
            stdout, stderr = _drain(proc)
            exec_error = f"timed out after {timeout}s"

    duration_ms = int((time.monotonic() - start_monotonic) * 1000)

    if exec_error is None:
        return ScriptResult(
            script_id=job.id,
            name=job.name,
            timestamp=int(started),
            success=True,
            output=stdout,
            error=stderr,
            exit_code=0,
            duration_ms=duration_ms
        )

    error = f"{stderr}\n{exec_error}" if stderr else exec_error
    return ScriptResult(
        script_id=job.id,
        name=job.name,
        timestamp=int(started),
        success=False,
        output=stdout,
        error=error,
        exit_code=exit_code if exit_code is not None else NO_EXIT_CODE,
        duration_ms=duration_ms
    )


def _kill(proc: subprocess.Popen) -> None:
    """Kill a timed out script together with anything it spawned"""
    try:
        descendants = psutil.Process(proc.pid).children(recursive=True)
    except psutil.Error:
        descendants = []

    if sys.platform == 'win32':
        proc.kill()
    else:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    # Children that called setsid are outside the process group
    for child in descendants:
        try:
            child.kill()
        except psutil.Error:
            pass


def _drain(proc: subprocess.Popen) -> Tuple[str, str]:
    """Collect what a killed script wrote, giving up after a short grace"""
    try:
        return proc.communicate(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired as e:
        # A reparented daemon still holds the pipes open
        logger.warning(
            f"Output pipes of pid {proc.pid} still open after kill, abandoning them",
            extra={'context': {'component': 'script', 'pid': proc.pid}}
        )
        partial = (_decode(e.output), _decode(e.stderr))
        for pipe in (proc.stdout, proc.stderr):
            if pipe:
                pipe.close()
        proc.wait()
        return partial


def _decode(data) -> str:
    if data is None:
        return ''
    if isinstance(data, bytes):
        return data.decode('utf-8', errors='replace')
    return data
