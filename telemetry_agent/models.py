"""
Payload types produced by collectors and pushed by the dispatcher.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from types import MappingProxyType
from typing import ClassVar, Dict, List, Mapping, Optional, Tuple, Union


class CollectorKind(str, Enum):
    """Stable collector names, used as Snapshot keys"""
    CPU = 'cpu'
    MEMORY = 'memory'
    DISK = 'disk'
    NETWORK = 'network'
    PROCESS = 'process'
    LOG = 'log'
    SCRIPT = 'script'
    SERVICE = 'service'


class ServiceState(str, Enum):
    RUNNING = 'running'
    STOPPED = 'stopped'
    FAILED = 'failed'
    UNKNOWN = 'unknown'


@dataclass
class CpuMetrics:
    """CPU usage snapshot"""
    kind: ClassVar[CollectorKind] = CollectorKind.CPU

    usage_percent: float
    load_avg_1: float
    load_avg_5: float
    load_avg_15: float
    core_count: int


@dataclass
class MemoryMetrics:
    """Virtual memory snapshot (bytes)"""
    kind: ClassVar[CollectorKind] = CollectorKind.MEMORY

    total: int
    used: int
    free: int
    used_percent: float
    available: int


@dataclass
class PartitionMetrics:
    device: str
    mountpoint: str
    fstype: str
    total: int
    used: int
    free: int
    used_percent: float


@dataclass
class DiskMetrics:
    kind: ClassVar[CollectorKind] = CollectorKind.DISK

    partitions: List[PartitionMetrics] = field(default_factory=list)


@dataclass
class InterfaceMetrics:
    name: str
    bytes_sent: int
    bytes_recv: int
    packets_sent: int
    packets_recv: int
    errin: int
    errout: int


@dataclass
class NetworkMetrics:
    kind: ClassVar[CollectorKind] = CollectorKind.NETWORK

    interfaces: List[InterfaceMetrics] = field(default_factory=list)


@dataclass
class ProcessSample:
    """CPU usage of one process over the sampling window"""
    pid: int
    cpu_percent: float


@dataclass
class ProcessRecord:
    """Enriched details of a top-N process"""
    pid: int
    name: str
    user: str
    cpu_percent: float
    memory_percent: float
    memory_bytes: int
    create_time: int  # unix seconds
    status: str
    command: str


@dataclass
class ProcessMetrics:
    kind: ClassVar[CollectorKind] = CollectorKind.PROCESS

    processes: List[ProcessRecord] = field(default_factory=list)
    total: int = 0

    @property
    def collected(self) -> int:
        return len(self.processes)


@dataclass
class LogEntry:
    """One log line from a tailed file"""
    source: str
    level: str
    message: str
    timestamp: int
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class LogMetrics:
    kind: ClassVar[CollectorKind] = CollectorKind.LOG

    entries: List[LogEntry] = field(default_factory=list)


@dataclass(frozen=True)
class ScriptJob:
    """Configured probe script; runtime state lives in the executor"""
    id: str
    name: str
    command: str
    args: Tuple[str, ...] = ()
    timeout: int = 30
    interval: int = 0


@dataclass
class ScriptResult:
    script_id: str
    name: str
    timestamp: int
    success: bool
    output: str
    error: str
    exit_code: int
    duration_ms: int


@dataclass
class ScriptMetrics:
    kind: ClassVar[CollectorKind] = CollectorKind.SCRIPT

    results: List[ScriptResult] = field(default_factory=list)


@dataclass(frozen=True)
class ServiceTarget:
    name: str
    port: Optional[int] = None
    host: str = 'localhost'
    description: str = ''


@dataclass
class ServiceStatus:
    name: str
    status: ServiceState
    enabled: bool = False
    description: str = ''
    uptime_seconds: int = 0
    port: Optional[int] = None
    port_accessible: bool = False


@dataclass
class ServiceMetrics:
    kind: ClassVar[CollectorKind] = CollectorKind.SERVICE

    services: List[ServiceStatus] = field(default_factory=list)


Payload = Union[
    CpuMetrics,
    MemoryMetrics,
    DiskMetrics,
    NetworkMetrics,
    ProcessMetrics,
    LogMetrics,
    ScriptMetrics,
    ServiceMetrics,
]


@dataclass(frozen=True)
class Snapshot:
    """
    One collection cycle's results.

    Each collector kind has its own typed slot; a kind whose collector
    failed this cycle is left as None.
    """
    host_id: str
    timestamp: int
    cpu: Optional[CpuMetrics] = None
    memory: Optional[MemoryMetrics] = None
    disk: Optional[DiskMetrics] = None
    network: Optional[NetworkMetrics] = None
    process: Optional[ProcessMetrics] = None
    log: Optional[LogMetrics] = None
    script: Optional[ScriptMetrics] = None
    service: Optional[ServiceMetrics] = None

    @classmethod
    def assemble(cls, host_id: str, timestamp: int, payloads: List[Payload]) -> 'Snapshot':
        """Build a snapshot, slotting each payload by its kind"""
        slots = {}
        for payload in payloads:
            slots[payload.kind.value] = payload
        return cls(host_id=host_id, timestamp=timestamp, **slots)

    def metrics(self) -> Mapping[str, Payload]:
        """Collector name -> payload for every kind present"""
        present = {}
        for f in fields(self):
            if f.name in ('host_id', 'timestamp'):
                continue
            value = getattr(self, f.name)
            if value is not None:
                present[f.name] = value
        return MappingProxyType(present)
