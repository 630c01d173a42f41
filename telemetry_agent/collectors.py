"""
Collector capability plus the OS metric and log tail collectors.
"""

import json
import os
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from typing import Dict, List, Optional

import psutil

from logcore import get_logger
from telemetry_agent.models import (
    CollectorKind,
    CpuMetrics,
    DiskMetrics,
    InterfaceMetrics,
    LogEntry,
    LogMetrics,
    MemoryMetrics,
    NetworkMetrics,
    PartitionMetrics,
    Payload,
)

logger = get_logger(__name__)


class CollectorError(Exception):
    """A collector could not produce its payload this cycle"""
    pass


class Collector(ABC):
    """Unit of acquisition driven by the scheduler"""

    kind: CollectorKind

    def name(self) -> str:
        """Stable identifier, used as the snapshot key"""
        return self.kind.value

    @abstractmethod
    def collect(self) -> Payload:
        """Produce this cycle's payload or raise"""


class CpuCollector(Collector):
    """CPU usage over one second, load averages and core count"""

    kind = CollectorKind.CPU

    def collect(self) -> CpuMetrics:
        usage = psutil.cpu_percent(interval=1)

        try:
            load_avg = psutil.getloadavg()
        except (AttributeError, OSError) as e:
            raise CollectorError(f"load average unavailable: {e}") from e

        return CpuMetrics(
            usage_percent=usage,
            load_avg_1=load_avg[0],
            load_avg_5=load_avg[1],
            load_avg_15=load_avg[2],
            core_count=psutil.cpu_count(logical=True) or 0
        )


class MemoryCollector(Collector):
    kind = CollectorKind.MEMORY

    def collect(self) -> MemoryMetrics:
        mem = psutil.virtual_memory()
        return MemoryMetrics(
            total=mem.total,
            used=mem.used,
            free=mem.free,
            used_percent=mem.percent,
            available=mem.available
        )


class DiskCollector(Collector):
    """Usage for every mounted physical partition"""

    kind = CollectorKind.DISK

    def collect(self) -> DiskMetrics:
        metrics = DiskMetrics()

        for partition in psutil.disk_partitions(all=False):
            try:
                usage = psutil.disk_usage(partition.mountpoint)
            except (PermissionError, OSError):
                # Unreadable mountpoint (e.g. CD-ROM without media)
                continue

            metrics.partitions.append(PartitionMetrics(
                device=partition.device,
                mountpoint=partition.mountpoint,
                fstype=partition.fstype,
                total=usage.total,
                used=usage.used,
                free=usage.free,
                used_percent=usage.percent
            ))

        return metrics


class NetworkCollector(Collector):
    """Per-interface I/O counters, loopback excluded"""

    kind = CollectorKind.NETWORK

    def collect(self) -> NetworkMetrics:
        metrics = NetworkMetrics()

        for name, io in psutil.net_io_counters(pernic=True).items():
            if name == 'lo':
                continue

            metrics.interfaces.append(InterfaceMetrics(
                name=name,
                bytes_sent=io.bytes_sent,
                bytes_recv=io.bytes_recv,
                packets_sent=io.packets_sent,
                packets_recv=io.packets_recv,
                errin=io.errin,
                errout=io.errout
            ))

        return metrics


class LogTailer(Collector):
    """
    Tails log files and turns lines into LogEntry records.

    The first read of a file takes only its last max_lines lines; later
    reads pick up what was appended since, capped at max_lines per file.
    Rotation (file shrinking) restarts from the beginning.
    """

    kind = CollectorKind.LOG

    def __init__(self, log_files: List[str], max_lines: int = 100):
        self.log_files = log_files
        self.max_lines = max_lines if max_lines > 0 else 100
        self._file_positions: Dict[str, int] = {}

    def collect(self) -> LogMetrics:
        metrics = LogMetrics()

        for log_file in self.log_files:
            try:
                lines = self._read_new_lines(log_file)
            except FileNotFoundError:
                # Log file doesn't exist yet
                self._file_positions.pop(log_file, None)
                continue
            except OSError as e:
                logger.warning(
                    f"Error tailing {log_file}: {e}",
                    extra={'context': {'component': 'log', 'file': log_file}}
                )
                continue

            for line in lines:
                entry = self._parse_log_line(log_file, line)
                if entry:
                    metrics.entries.append(entry)

        return metrics

    def _read_new_lines(self, log_file: str) -> List[str]:
        """Return at most max_lines lines appended since the last read"""
        with open(log_file, 'rb') as f:
            f.seek(0, os.SEEK_END)
            current_size = f.tell()

            last_pos = self._file_positions.get(log_file)
            if last_pos is not None and current_size < last_pos:
                # Rotated or truncated
                last_pos = 0

            if last_pos is None:
                last_pos = 0
            if current_size == last_pos:
                self._file_positions[log_file] = current_size
                return []

            f.seek(last_pos)
            tail = deque(f, maxlen=self.max_lines)
            position = f.tell()

            # A line still being written is read whole on the next cycle
            if tail and not tail[-1].endswith(b'\n'):
                position -= len(tail.pop())
            self._file_positions[log_file] = position

        return [raw.decode('utf-8', errors='replace') for raw in tail]

    def _parse_log_line(self, source: str, line: str) -> Optional[LogEntry]:
        """Parse a log line (logcore JSON or plain text)"""
        line = line.strip()
        if not line:
            return None

        timestamp = int(time.time())
        tags = {'file': source}

        try:
            data = json.loads(line)
        except ValueError:
            data = None

        if isinstance(data, dict) and 'message' in data:
            parsed_timestamp = timestamp
            if 'timestamp' in data:
                try:
                    ts_str = str(data['timestamp']).rstrip('Z')
                    parsed = datetime.fromisoformat(ts_str)
                    if parsed.tzinfo is None:
                        parsed = parsed.replace(tzinfo=timezone.utc)
                    parsed_timestamp = int(parsed.timestamp())
                except ValueError:
                    pass

            if data.get('logger'):
                tags['logger'] = str(data['logger'])

            return LogEntry(
                source=os.path.basename(source),
                level=str(data.get('level', 'INFO')).upper(),
                message=str(data['message']),
                timestamp=parsed_timestamp,
                tags=tags
            )

        return LogEntry(
            source=os.path.basename(source),
            level=detect_level(line),
            message=line,
            timestamp=timestamp,
            tags=tags
        )


def detect_level(line: str) -> str:
    """Guess a severity from keywords in a plain text line"""
    upper = line.upper()
    if 'ERROR' in upper or 'FATAL' in upper:
        return 'ERROR'
    if 'WARN' in upper:
        return 'WARN'
    if 'DEBUG' in upper:
        return 'DEBUG'
    return 'INFO'
