"""
Client for the collection service's `collector.Collector` RPC contract.

Each method is an HTTP POST of a JSON request object to
`<server>/collector.Collector/<Method>`; replies are JSON objects carrying
`success` and `message`. One requests.Session is kept for the life of the
agent, so callers must not use a client from two threads at once.
"""

from dataclasses import asdict
from typing import Any, Dict, List, Optional

import requests

from telemetry_agent.models import LogEntry, ProcessRecord, ScriptResult, ServiceStatus

SERVICE_NAME = 'collector.Collector'


class RpcError(Exception):
    """An RPC call failed or its reply could not be understood"""

    def __init__(self, method: str, message: str):
        super().__init__(f"{method}: {message}")
        self.method = method


class RpcReply:
    """Decoded reply of a unary call"""

    def __init__(self, success: bool, message: str = ''):
        self.success = success
        self.message = message

    def __repr__(self):
        return f"RpcReply(success={self.success!r}, message={self.message!r})"


def base_url(server_addr: str) -> str:
    if '://' in server_addr:
        return server_addr.rstrip('/')
    return f"http://{server_addr.rstrip('/')}"


class CollectorClient:
    """Typed wrappers around the collection service's methods"""

    def __init__(self, server_addr: str, session: Optional[requests.Session] = None):
        self.server_addr = server_addr
        self.url = base_url(server_addr)
        self.session = session or requests.Session()
        self.session.headers.update({'Content-Type': 'application/json'})

    def call(self, method: str, request: Dict[str, Any], timeout: float) -> RpcReply:
        """Issue one call, abandoning it after `timeout` seconds"""
        endpoint = f"{self.url}/{SERVICE_NAME}/{method}"
        try:
            response = self.session.post(endpoint, json=request, timeout=timeout)
        except requests.exceptions.Timeout:
            raise RpcError(method, f"deadline exceeded after {timeout}s")
        except requests.exceptions.RequestException as e:
            raise RpcError(method, f"transport failure: {e}")

        if not 200 <= response.status_code < 300:
            raise RpcError(method, f"HTTP {response.status_code}: {response.text[:200]}")

        if not response.content:
            return RpcReply(success=True)

        try:
            body = response.json()
        except ValueError:
            raise RpcError(method, "reply is not valid JSON")
        if not isinstance(body, dict):
            raise RpcError(method, "reply is not a JSON object")

        return RpcReply(
            success=bool(body.get('success', True)),
            message=str(body.get('message', ''))
        )

    def register_agent(self, host_id: str, hostname: str, ip: str, os_name: str,
                       arch: str, tags: Dict[str, str], timeout: float) -> RpcReply:
        return self.call('RegisterAgent', {
            'host_id': host_id,
            'hostname': hostname,
            'ip': ip,
            'os': os_name,
            'arch': arch,
            'tags': tags,
        }, timeout)

    def report_metrics(self, request: Dict[str, Any], timeout: float) -> RpcReply:
        """request holds host_id, timestamp and any of cpu/memory/disk/network"""
        return self.call('ReportMetrics', request, timeout)

    def heartbeat(self, host_id: str, timestamp: int, timeout: float) -> RpcReply:
        return self.call('Heartbeat', {'host_id': host_id, 'timestamp': timestamp}, timeout)

    def report_processes(self, host_id: str, timestamp: int,
                         processes: List[ProcessRecord], timeout: float) -> RpcReply:
        return self.call('ReportProcesses', {
            'host_id': host_id,
            'timestamp': timestamp,
            'processes': [asdict(p) for p in processes],
        }, timeout)

    def report_logs(self, host_id: str, timestamp: int,
                    logs: List[LogEntry], timeout: float) -> RpcReply:
        return self.call('ReportLogs', {
            'host_id': host_id,
            'timestamp': timestamp,
            'logs': [asdict(entry) for entry in logs],
        }, timeout)

    def report_script_result(self, host_id: str, result: ScriptResult, timeout: float) -> RpcReply:
        return self.call('ReportScriptResult', {
            'host_id': host_id,
            'script_id': result.script_id,
            'script_name': result.name,
            'timestamp': result.timestamp,
            'success': result.success,
            'output': result.output,
            'error': result.error,
            'exit_code': result.exit_code,
            'duration_ms': result.duration_ms,
        }, timeout)

    def report_service_status(self, host_id: str, timestamp: int,
                              services: List[ServiceStatus], timeout: float) -> RpcReply:
        return self.call('ReportServiceStatus', {
            'host_id': host_id,
            'timestamp': timestamp,
            'services': [
                {
                    'name': s.name,
                    'status': s.status.value,
                    'enabled': s.enabled,
                    'description': s.description,
                    'uptime_seconds': s.uptime_seconds,
                    'port': s.port,
                    'port_accessible': s.port_accessible,
                }
                for s in services
            ],
        }, timeout)

    def close(self):
        self.session.close()
