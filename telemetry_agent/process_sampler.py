"""
Top-N process sampler.

Ranks processes by CPU usage measured over a one second window, then
fetches the expensive per-process details only for the winners.
"""

import time
from typing import List, Optional, Tuple

import psutil

from logcore import get_logger
from telemetry_agent.collectors import Collector, CollectorError
from telemetry_agent.models import CollectorKind, ProcessMetrics, ProcessRecord, ProcessSample

logger = get_logger(__name__)

DEFAULT_MAX_PROCESSES = 50
MAX_CHECKED_PROCESSES = 2000
SAMPLE_WINDOW_SECONDS = 1.0
MAX_COMMAND_LENGTH = 200


class ProcessSampler(Collector):
    """Reports the max_processes busiest processes by CPU"""

    kind = CollectorKind.PROCESS

    def __init__(self, max_processes: int = DEFAULT_MAX_PROCESSES):
        if max_processes <= 0:
            max_processes = DEFAULT_MAX_PROCESSES
        self.max_processes = max_processes

    def collect(self) -> ProcessMetrics:
        try:
            processes = list(psutil.process_iter())
        except (psutil.Error, OSError) as e:
            raise CollectorError(f"cannot enumerate processes: {e}") from e

        total = len(processes)
        checked = processes[:MAX_CHECKED_PROCESSES]
        if not checked:
            return ProcessMetrics(processes=[], total=total)

        total_memory = self._total_memory()

        # Baseline call; psutil measures the next call against it
        initialized = 0
        for proc in checked:
            try:
                proc.cpu_percent(interval=None)
                initialized += 1
            except psutil.Error:
                pass
        logger.debug(f"Initialized CPU stats for {initialized} of {total} processes")

        time.sleep(SAMPLE_WINDOW_SECONDS)

        candidates = self._measure(checked)
        # Stable: equal CPU keeps enumeration order
        candidates.sort(key=lambda c: c[1].cpu_percent, reverse=True)
        self._log_top(candidates)

        selected = candidates[:self.max_processes]

        records = []
        errors = 0
        for proc, sample in selected:
            record = self._enrich(proc, sample, total_memory)
            if record is None:
                errors += 1
                continue
            records.append(record)

        logger.info(
            f"Collected {len(records)} of {total} processes",
            extra={'context': {
                'component': 'process',
                'candidates': len(candidates),
                'errors': errors,
            }}
        )
        return ProcessMetrics(processes=records, total=total)

    def _measure(self, processes: List[psutil.Process]) -> List[Tuple[psutil.Process, ProcessSample]]:
        """CPU percent since the baseline; processes that fail are dropped"""
        candidates = []
        for proc in processes:
            try:
                cpu = proc.cpu_percent(interval=None)
            except psutil.Error:
                continue
            candidates.append((proc, ProcessSample(pid=proc.pid, cpu_percent=cpu)))
        return candidates

    def _total_memory(self) -> int:
        try:
            return psutil.virtual_memory().total
        except (psutil.Error, OSError) as e:
            logger.warning(f"Failed to get total memory: {e}")
            return 0

    def _enrich(
        self,
        proc: psutil.Process,
        sample: ProcessSample,
        total_memory: int
    ) -> Optional[ProcessRecord]:
        """Fetch details for a selected process, keeping its measured CPU"""
        try:
            with proc.oneshot():
                name = proc.name()
                user = _safe(proc.username, '')
                mem_info = _safe(proc.memory_info, None)
                create_time = _safe(proc.create_time, 0.0)
                status = _safe(proc.status, '')
                cmdline = _safe(proc.cmdline, None) or []
        except psutil.Error as e:
            logger.debug(f"Failed to get info for process {sample.pid}: {e}")
            return None

        memory_bytes = mem_info.rss if mem_info is not None else 0
        if mem_info is not None and total_memory > 0:
            memory_percent = memory_bytes / total_memory * 100.0
        else:
            memory_percent = _safe(proc.memory_percent, 0.0)

        return ProcessRecord(
            pid=sample.pid,
            name=name,
            user=user,
            cpu_percent=sample.cpu_percent,
            memory_percent=memory_percent,
            memory_bytes=memory_bytes,
            create_time=int(create_time),
            status=status,
            command=truncate_command(' '.join(cmdline))
        )

    def _log_top(self, candidates: List[Tuple[psutil.Process, ProcessSample]]) -> None:
        if not candidates:
            return
        top = ', '.join(
            f"{sample.pid}={sample.cpu_percent:.2f}%" for _, sample in candidates[:5]
        )
        logger.debug(f"Top processes by CPU: {top}")


def truncate_command(command: str) -> str:
    if len(command) > MAX_COMMAND_LENGTH:
        return command[:MAX_COMMAND_LENGTH] + '...'
    return command


def _safe(getter, default):
    """Call an optional psutil getter, falling back on access errors"""
    try:
        return getter()
    except psutil.Error:
        return default
