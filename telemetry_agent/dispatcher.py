"""
Report dispatchers: push snapshots to the collection service, or print them.
"""

import json
import platform
import socket
import threading
import time
from dataclasses import asdict
from typing import Callable, Dict, Optional

import click
import psutil

from logcore import get_logger
from telemetry_agent.models import (
    LogMetrics,
    ProcessMetrics,
    ScriptMetrics,
    ServiceMetrics,
    Snapshot,
)
from telemetry_agent.rpc import CollectorClient, RpcError

logger = get_logger(__name__)

REGISTER_TIMEOUT = 5.0
METRICS_TIMEOUT = 5.0
HEARTBEAT_TIMEOUT = 3.0
BULK_TIMEOUT = 10.0

DEFAULT_TAGS = {'env': 'production'}


class RegistrationError(RpcError):
    """The agent could not be registered with the collection service"""
    pass


def detect_local_ip() -> str:
    """
    Best guess at the address the collection service sees.

    A UDP "connect" sends nothing but makes the kernel pick the outbound
    interface. Falls back to the first non-loopback IPv4 address.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(('8.8.8.8', 80))
            return sock.getsockname()[0]
    except OSError as e:
        logger.debug(f"Failed to get IP by dial: {e}")

    try:
        for addrs in psutil.net_if_addrs().values():
            for addr in addrs:
                if addr.family == socket.AF_INET and not addr.address.startswith('127.'):
                    return addr.address
    except OSError:
        pass

    return '127.0.0.1'


def resolve_ip(manual_ip: Optional[str]) -> str:
    if manual_ip:
        logger.info(f"Using manual IP from config: {manual_ip}")
        return manual_ip
    ip = detect_local_ip()
    logger.info(f"Auto-detected IP: {ip}")
    return ip


class ReportDispatcher:
    """
    Pushes snapshots over one CollectorClient.

    Registration happens once, at construction. If the service declines it,
    every later push is a no-op. Calls from the collection loop and the
    heartbeat thread share the client, so each one holds self._lock.
    """

    def __init__(
        self,
        client: CollectorClient,
        host_id: str,
        ip: Optional[str] = None,
        tags: Optional[Dict[str, str]] = None,
        clock: Callable[[], float] = time.time
    ):
        self.client = client
        self.host_id = host_id
        self.tags = dict(tags) if tags else dict(DEFAULT_TAGS)
        self.registered = False
        self._clock = clock
        self._lock = threading.Lock()

        self._register(ip or resolve_ip(None))

    def _now(self) -> int:
        return int(self._clock())

    def _register(self, ip: str) -> None:
        try:
            with self._lock:
                reply = self.client.register_agent(
                    host_id=self.host_id,
                    hostname=socket.gethostname(),
                    ip=ip,
                    os_name=platform.system().lower(),
                    arch=platform.machine().lower(),
                    tags=self.tags,
                    timeout=REGISTER_TIMEOUT
                )
        except RpcError as e:
            raise RegistrationError('RegisterAgent', str(e)) from e

        if reply.success:
            self.registered = True
            logger.info(
                f"Agent registered successfully: {reply.message}",
                extra={'context': {'host_id': self.host_id, 'ip': ip}}
            )
        else:
            logger.error(
                f"Agent registration failed: {reply.message}",
                extra={'context': {'host_id': self.host_id, 'ip': ip}}
            )

    def report(self, snapshot: Snapshot) -> None:
        """Push the primary metrics (cpu, memory, disk, network) in one call"""
        if not self.registered:
            return

        request = {'host_id': snapshot.host_id, 'timestamp': snapshot.timestamp}
        for key in ('cpu', 'memory', 'disk', 'network'):
            payload = getattr(snapshot, key)
            if payload is not None:
                request[key] = asdict(payload)

        with self._lock:
            reply = self.client.report_metrics(request, timeout=METRICS_TIMEOUT)

        if not reply.success:
            logger.warning(f"Server rejected metrics: {reply.message}")

    def report_secondary(self, snapshot: Snapshot) -> Dict[str, bool]:
        """
        Push process, log, script and service payloads independently.

        A failing push is logged and the rest are still attempted. Returns
        kind -> whether its push went through, for kinds present.
        """
        outcome = {}
        pushes = (
            ('process', snapshot.process, self.report_processes),
            ('log', snapshot.log, self.report_logs),
            ('script', snapshot.script, self.report_script_results),
            ('service', snapshot.service, self.report_service_status),
        )

        for kind, payload, push in pushes:
            if payload is None:
                continue
            try:
                push(payload)
                outcome[kind] = True
            except RpcError as e:
                outcome[kind] = False
                logger.warning(
                    f"Failed to report {kind} data: {e}",
                    extra={'context': {'component': 'dispatcher', 'kind': kind}}
                )

        return outcome

    def report_processes(self, data: ProcessMetrics) -> None:
        if not self.registered:
            logger.debug("Reporter not registered, skipping process report")
            return
        if not data.processes:
            logger.debug("No process data to report")
            return

        with self._lock:
            reply = self.client.report_processes(
                self.host_id, self._now(), data.processes, timeout=BULK_TIMEOUT
            )

        if reply.success:
            logger.info(f"Reported {len(data.processes)} processes: {reply.message}")
        else:
            logger.warning(f"Server rejected process data: {reply.message}")

    def report_logs(self, data: LogMetrics) -> None:
        if not self.registered:
            return

        with self._lock:
            self.client.report_logs(self.host_id, self._now(), data.entries, timeout=BULK_TIMEOUT)

    def report_script_results(self, data: ScriptMetrics) -> None:
        """One call per result; a failed call does not stop the others"""
        if not self.registered:
            return

        failed = []
        for result in data.results:
            try:
                with self._lock:
                    self.client.report_script_result(self.host_id, result, timeout=BULK_TIMEOUT)
            except RpcError as e:
                failed.append(result.script_id)
                logger.warning(
                    f"Failed to report script result {result.script_id}: {e}",
                    extra={'context': {'component': 'dispatcher', 'script_id': result.script_id}}
                )

        if failed:
            raise RpcError('ReportScriptResult', f"{len(failed)} of {len(data.results)} results not delivered")

    def report_service_status(self, data: ServiceMetrics) -> None:
        if not self.registered:
            return

        with self._lock:
            self.client.report_service_status(
                self.host_id, self._now(), data.services, timeout=BULK_TIMEOUT
            )

    def heartbeat(self) -> None:
        if not self.registered:
            return

        with self._lock:
            self.client.heartbeat(self.host_id, self._now(), timeout=HEARTBEAT_TIMEOUT)

    def close(self) -> None:
        with self._lock:
            self.client.close()


class ConsoleDispatcher:
    """Debug mode: prints each snapshot instead of pushing it"""

    registered = False

    def report(self, snapshot: Snapshot) -> None:
        document = {
            'host_id': snapshot.host_id,
            'timestamp': snapshot.timestamp,
            'metrics': {name: asdict(payload) for name, payload in snapshot.metrics().items()},
        }
        click.echo(f"\n=== Metrics Report ===\n{json.dumps(document, indent=2, default=str)}")

    def report_secondary(self, snapshot: Snapshot) -> Dict[str, bool]:
        return {}

    def heartbeat(self) -> None:
        pass

    def close(self) -> None:
        pass
