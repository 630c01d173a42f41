"""
Service health: service manager state reconciled with a TCP port probe.
"""

import socket
import subprocess
import sys
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from logcore import get_logger
from telemetry_agent.collectors import Collector
from telemetry_agent.models import (
    CollectorKind,
    ServiceMetrics,
    ServiceState,
    ServiceStatus,
    ServiceTarget,
)

logger = get_logger(__name__)

PORT_PROBE_TIMEOUT = 3.0
MANAGER_QUERY_TIMEOUT = 5.0
DEFAULT_SERVICES = ['sshd', 'docker', 'nginx']

SYSTEMD_PROPERTIES = [
    'LoadState',
    'ActiveState',
    'UnitFileState',
    'Description',
    'ActiveEnterTimestampMonotonic',
]


@dataclass
class ManagerState:
    """What the platform service manager says about a unit"""
    status: ServiceState = ServiceState.UNKNOWN
    enabled: bool = False
    description: str = ''
    uptime_seconds: int = 0


def reconcile_status(manager_status: ServiceState, port_accessible: Optional[bool]) -> ServiceState:
    """
    Combine the manager's view with the port probe.

    A responding port means the service is running whatever the manager
    says. A closed port demotes "running" to "failed"; otherwise the
    manager's status stands. Without a probe the manager's status is used.
    """
    if port_accessible is None:
        return manager_status
    if port_accessible:
        return ServiceState.RUNNING
    if manager_status in (ServiceState.RUNNING, ServiceState.FAILED):
        return ServiceState.FAILED
    return manager_status


def probe_port(host: str, port: int, timeout: float = PORT_PROBE_TIMEOUT) -> bool:
    """True when a TCP connection to host:port can be opened"""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class ServiceProber(Collector):
    kind = CollectorKind.SERVICE

    def __init__(self, targets: Sequence[ServiceTarget]):
        self.targets = list(targets) or [ServiceTarget(name=n) for n in DEFAULT_SERVICES]

    def collect(self) -> ServiceMetrics:
        metrics = ServiceMetrics()
        for target in self.targets:
            metrics.services.append(self.check(target))
        return metrics

    def check(self, target: ServiceTarget) -> ServiceStatus:
        state = query_manager(target.name)

        port_accessible = None
        if target.port:
            port_accessible = probe_port(target.host or 'localhost', target.port)

        status = reconcile_status(state.status, port_accessible)
        if status != state.status:
            logger.debug(
                f"Service {target.name} reconciled from {state.status.value} to {status.value}",
                extra={'context': {'component': 'service', 'port': target.port}}
            )

        return ServiceStatus(
            name=target.name,
            status=status,
            enabled=state.enabled,
            description=state.description or target.description,
            uptime_seconds=state.uptime_seconds if status == ServiceState.RUNNING else 0,
            port=target.port,
            port_accessible=bool(port_accessible)
        )


def query_manager(name: str) -> ManagerState:
    if sys.platform == 'win32':
        return _query_sc(name)
    return _query_systemd(name)


def _run(args: List[str]) -> Optional[str]:
    """Run a manager command, None if it is missing or times out"""
    try:
        proc = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=MANAGER_QUERY_TIMEOUT
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"{args[0]} unavailable: {e}")
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout


def parse_systemd_show(output: str) -> Dict[str, str]:
    props = {}
    for line in output.splitlines():
        key, sep, value = line.partition('=')
        if sep:
            props[key.strip()] = value.strip()
    return props


def _query_systemd(name: str) -> ManagerState:
    output = _run(['systemctl', 'show', name, '--property=' + ','.join(SYSTEMD_PROPERTIES)])
    if output is None:
        return ManagerState()

    props = parse_systemd_show(output)
    state = ManagerState(
        enabled=props.get('UnitFileState', '').startswith('enabled'),
        description=props.get('Description', '')
    )

    active = props.get('ActiveState', '')
    if active == 'active':
        state.status = ServiceState.RUNNING
        state.uptime_seconds = monotonic_uptime(props.get('ActiveEnterTimestampMonotonic', ''))
    elif active == 'failed':
        state.status = ServiceState.FAILED
    elif props.get('LoadState') == 'not-found' or not active:
        state.status = ServiceState.UNKNOWN
        # systemd describes missing units as "<name>.service"
        state.description = ''
    else:
        state.status = ServiceState.STOPPED

    return state


def monotonic_uptime(value: str) -> int:
    """Seconds since a unit entered the active state (microseconds, CLOCK_MONOTONIC)"""
    try:
        entered_us = int(value)
    except ValueError:
        return 0
    if entered_us <= 0:
        return 0
    return max(0, int(time.monotonic() - entered_us / 1_000_000))


def _query_sc(name: str) -> ManagerState:
    output = _run(['sc', 'query', name])
    if output is None:
        return ManagerState()

    state = ManagerState()
    if 'RUNNING' in output:
        state.status = ServiceState.RUNNING
    elif 'STOPPED' in output:
        state.status = ServiceState.STOPPED

    config = _run(['sc', 'qc', name]) or ''
    state.enabled = 'AUTO_START' in config
    return state
