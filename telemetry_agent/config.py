"""
Agent configuration loaded from agent-config.yaml.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from telemetry_agent.models import ScriptJob, ServiceTarget

DEFAULT_CONFIG_PATH = 'agent-config.yaml'

DEFAULT_LOG_PATHS = [
    '/var/log/syslog',
    '/var/log/messages',
    '/var/log/nginx/access.log',
    '/var/log/nginx/error.log',
]


class ConfigError(Exception):
    """Configuration validation error"""
    pass


@dataclass
class AgentConfig:
    server_addr: str = 'localhost:50051'
    host_id: str = 'host-001'
    collect_interval: int = 10
    debug: bool = False
    manual_ip: Optional[str] = None
    log_paths: List[str] = field(default_factory=list)
    log_max_lines: int = 100
    max_processes: int = 50
    scripts: List[ScriptJob] = field(default_factory=list)
    services: List[str] = field(default_factory=list)
    service_ports: List[ServiceTarget] = field(default_factory=list)
    tags: Dict[str, str] = field(default_factory=lambda: {'env': 'production'})

    def effective_log_paths(self) -> List[str]:
        return self.log_paths or list(DEFAULT_LOG_PATHS)

    def service_targets(self) -> List[ServiceTarget]:
        """Port-aware entries win over the legacy name list"""
        if self.service_ports:
            return list(self.service_ports)
        return [ServiceTarget(name=name) for name in self.services]


def load_config(config_path: Optional[str] = None) -> AgentConfig:
    """
    Load agent configuration.

    Args:
        config_path: YAML file to read. When omitted, agent-config.yaml in
            the working directory is used if it exists, defaults otherwise.

    Returns:
        AgentConfig: Validated configuration

    Raises:
        ConfigError: If the file cannot be parsed or holds invalid values
    """
    if config_path is None:
        if not Path(DEFAULT_CONFIG_PATH).exists():
            return AgentConfig()
        config_path = DEFAULT_CONFIG_PATH

    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}")

    return parse_config(data or {})


def parse_config(data: Dict[str, Any]) -> AgentConfig:
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a mapping")

    config = AgentConfig()

    for key in ('server_addr', 'host_id', 'manual_ip'):
        if data.get(key) is not None:
            setattr(config, key, str(data[key]))

    for key in ('collect_interval', 'log_max_lines', 'max_processes'):
        if data.get(key) is not None:
            setattr(config, key, _int(data[key], key))

    if config.collect_interval <= 0:
        raise ConfigError(f"collect_interval must be positive, got {config.collect_interval}")

    config.debug = bool(data.get('debug', False))
    config.log_paths = [str(p) for p in _list(data, 'log_paths')]
    config.services = [str(s) for s in _list(data, 'services')]
    config.scripts = [_script_job(entry, i) for i, entry in enumerate(_list(data, 'scripts'))]
    config.service_ports = [_service_target(entry, i) for i, entry in enumerate(_list(data, 'service_ports'))]

    if data.get('tags') is not None:
        if not isinstance(data['tags'], dict):
            raise ConfigError("tags must be a mapping")
        config.tags = {str(k): str(v) for k, v in data['tags'].items()}

    ids = [job.id for job in config.scripts]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate script ids: {duplicates}")

    return config


def _int(value: Any, key: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {value!r}")


def _list(data: Dict[str, Any], key: str) -> list:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list")
    return value


def _script_job(entry: Any, index: int) -> ScriptJob:
    if not isinstance(entry, dict):
        raise ConfigError(f"scripts[{index}] must be a mapping")
    for required in ('id', 'command'):
        if not entry.get(required):
            raise ConfigError(f"scripts[{index}] is missing required field: {required}")

    args = entry.get('args') or []
    if not isinstance(args, list):
        raise ConfigError(f"scripts[{index}].args must be a list")

    return ScriptJob(
        id=str(entry['id']),
        name=str(entry.get('name') or entry['id']),
        command=str(entry['command']),
        args=tuple(str(a) for a in args),
        timeout=_int(entry.get('timeout', 30), f"scripts[{index}].timeout"),
        interval=_int(entry.get('interval', 0), f"scripts[{index}].interval")
    )


def _service_target(entry: Any, index: int) -> ServiceTarget:
    if not isinstance(entry, dict) or not entry.get('name'):
        raise ConfigError(f"service_ports[{index}] must be a mapping with a name")

    port = entry.get('port')
    if port is not None:
        port = _int(port, f"service_ports[{index}].port")
        if not 0 < port < 65536:
            raise ConfigError(f"service_ports[{index}].port out of range: {port}")

    return ServiceTarget(
        name=str(entry['name']),
        port=port or None,
        host=str(entry.get('host') or 'localhost'),
        description=str(entry.get('description') or '')
    )
