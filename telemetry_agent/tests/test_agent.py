"""
Unit tests for the scheduler, snapshot assembly and CLI.
"""

import threading
import time
from unittest.mock import Mock, patch

import pytest
from click.testing import CliRunner

from telemetry_agent.agent import TelemetryAgent, build_collectors, main
from telemetry_agent.collectors import Collector, CollectorError, LogTailer
from telemetry_agent.config import AgentConfig
from telemetry_agent.dispatcher import RegistrationError
from telemetry_agent.models import (
    CollectorKind,
    CpuMetrics,
    LogMetrics,
    MemoryMetrics,
    ScriptJob,
    ServiceTarget,
    Snapshot,
)
from telemetry_agent.process_sampler import ProcessSampler
from telemetry_agent.rpc import RpcError
from telemetry_agent.scripts import ScriptExecutor
from telemetry_agent.services import ServiceProber


class StaticCollector(Collector):
    def __init__(self, kind, payload=None, error=None):
        self.kind = kind
        self.payload = payload
        self.error = error
        self.calls = 0

    def collect(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.payload


def cpu_payload():
    return CpuMetrics(usage_percent=20.0, load_avg_1=1.0, load_avg_5=0.8, load_avg_15=0.5, core_count=2)


def mem_payload():
    return MemoryMetrics(total=100, used=50, free=50, used_percent=50.0, available=50)


def make_agent(collectors, dispatcher=None, **kwargs):
    return TelemetryAgent(
        host_id='host-001',
        dispatcher=dispatcher or Mock(),
        collectors=collectors,
        clock=lambda: 1700000000.0,
        **kwargs
    )


class TestSnapshot:

    def test_assemble_slots_by_kind(self):
        snapshot = Snapshot.assemble('host-001', 5, [mem_payload(), cpu_payload()])

        assert snapshot.cpu.usage_percent == 20.0
        assert snapshot.memory.total == 100
        assert snapshot.disk is None
        assert list(snapshot.metrics()) == ['cpu', 'memory']

    def test_snapshot_is_immutable(self):
        snapshot = Snapshot.assemble('host-001', 5, [cpu_payload()])

        with pytest.raises(AttributeError):
            snapshot.cpu = None
        with pytest.raises(TypeError):
            snapshot.metrics()['disk'] = None


class TestCollectionCycle:

    def test_failed_collector_omitted(self):
        """One failing collector leaves only its key out"""
        collectors = [
            StaticCollector(CollectorKind.CPU, cpu_payload()),
            StaticCollector(CollectorKind.DISK, error=CollectorError('permission denied')),
            StaticCollector(CollectorKind.MEMORY, mem_payload()),
        ]

        snapshot = make_agent(collectors).collect()

        assert snapshot.cpu is not None
        assert snapshot.memory is not None
        assert snapshot.disk is None
        assert snapshot.host_id == 'host-001'
        assert snapshot.timestamp == 1700000000

    def test_unexpected_exception_isolated(self):
        collectors = [
            StaticCollector(CollectorKind.CPU, error=RuntimeError('bug')),
            StaticCollector(CollectorKind.MEMORY, mem_payload()),
        ]

        snapshot = make_agent(collectors).collect()

        assert list(snapshot.metrics()) == ['memory']
        assert all(c.calls == 1 for c in collectors)

    def test_failure_is_logged_with_collector_name(self, caplog):
        collectors = [StaticCollector(CollectorKind.DISK, error=CollectorError('permission denied'))]

        make_agent(collectors).collect()

        assert 'Error collecting disk: permission denied' in caplog.text

    def test_cycle_pushes_primary_then_secondary(self):
        dispatcher = Mock()
        agent = make_agent([StaticCollector(CollectorKind.CPU, cpu_payload())], dispatcher)

        snapshot = agent.collect_and_report()

        assert [c[0] for c in dispatcher.method_calls] == ['report', 'report_secondary']
        dispatcher.report.assert_called_once_with(snapshot)
        dispatcher.report_secondary.assert_called_once_with(snapshot)

    def test_primary_failure_does_not_skip_secondary(self):
        dispatcher = Mock()
        dispatcher.report.side_effect = RpcError('ReportMetrics', 'unavailable')
        agent = make_agent([StaticCollector(CollectorKind.LOG, LogMetrics())], dispatcher)

        agent.collect_and_report()

        dispatcher.report_secondary.assert_called_once()


class TestLoops:

    def test_run_until_stopped(self):
        dispatcher = Mock()
        collector = StaticCollector(CollectorKind.CPU, cpu_payload())
        agent = make_agent([collector], dispatcher, collection_interval=0.01, heartbeat_interval=0.01)

        def stop_after_cycles(snapshot):
            if collector.calls >= 3:
                agent.stop()

        dispatcher.report.side_effect = stop_after_cycles
        runner = threading.Thread(target=agent.run)
        runner.start()
        runner.join(timeout=5)

        assert not runner.is_alive()
        assert collector.calls >= 3
        dispatcher.close.assert_called_once()

    def test_cycle_error_does_not_stop_loop(self):
        dispatcher = Mock()
        collector = StaticCollector(CollectorKind.CPU, cpu_payload())
        agent = make_agent([collector], dispatcher, collection_interval=0.01, heartbeat_interval=10)

        def flaky(snapshot):
            if collector.calls == 1:
                raise ValueError('malformed payload')
            agent.stop()

        dispatcher.report_secondary.side_effect = flaky
        runner = threading.Thread(target=agent.run)
        runner.start()
        runner.join(timeout=5)

        assert not runner.is_alive()
        assert collector.calls == 2

    def test_wait_subtracts_cycle_time(self):
        agent = make_agent([], collection_interval=10)

        assert agent.next_wait(2.5) == 7.5
        assert agent.next_wait(0) == 10
        assert agent.next_wait(14) == 0

    def test_cycles_start_at_fixed_rate(self):
        """A slow cycle shortens the following wait instead of adding to it"""
        dispatcher = Mock()
        starts = []

        class SlowCollector(Collector):
            kind = CollectorKind.CPU

            def collect(self):
                starts.append(time.monotonic())
                if len(starts) == 3:
                    agent.stop()
                time.sleep(0.3)
                return cpu_payload()

        agent = make_agent([SlowCollector()], dispatcher, collection_interval=0.5, heartbeat_interval=10)
        runner = threading.Thread(target=agent.run)
        runner.start()
        runner.join(timeout=5)

        assert not runner.is_alive()
        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert all(0.45 <= gap < 0.75 for gap in gaps)

    def test_heartbeat_independent_of_collection(self):
        """Heartbeats keep flowing while a collection cycle is blocked"""
        dispatcher = Mock()
        release = threading.Event()
        beats = threading.Event()

        class BlockingCollector(Collector):
            kind = CollectorKind.PROCESS

            def collect(self):
                release.wait(timeout=5)
                return LogMetrics()

        def heartbeat():
            if dispatcher.heartbeat.call_count >= 3:
                beats.set()

        dispatcher.heartbeat.side_effect = heartbeat
        agent = make_agent([BlockingCollector()], dispatcher, collection_interval=10, heartbeat_interval=0.01)

        runner = threading.Thread(target=agent.run)
        runner.start()
        try:
            assert beats.wait(timeout=5)
            assert dispatcher.report.call_count == 0
        finally:
            agent.stop()
            release.set()
            runner.join(timeout=5)

    def test_heartbeat_failure_keeps_beating(self):
        dispatcher = Mock()
        beats = threading.Event()

        def heartbeat():
            if dispatcher.heartbeat.call_count >= 2:
                beats.set()
            raise RpcError('Heartbeat', 'deadline exceeded')

        dispatcher.heartbeat.side_effect = heartbeat
        agent = make_agent([], dispatcher, collection_interval=10, heartbeat_interval=0.01)

        runner = threading.Thread(target=agent.run)
        runner.start()
        try:
            assert beats.wait(timeout=5)
        finally:
            agent.stop()
            runner.join(timeout=5)


class TestBuildCollectors:

    def test_default_set(self):
        collectors = build_collectors(AgentConfig())

        assert [c.name() for c in collectors] == [
            'cpu', 'memory', 'disk', 'network', 'process', 'log', 'service'
        ]
        log_tailer = collectors[5]
        assert isinstance(log_tailer, LogTailer)
        assert log_tailer.max_lines == 100

    def test_configured_set(self):
        config = AgentConfig(
            max_processes=10,
            scripts=[ScriptJob(id='x', name='X', command='true')],
            service_ports=[ServiceTarget(name='nginx', port=80)]
        )

        collectors = build_collectors(config)

        names = [c.name() for c in collectors]
        assert names[-2:] == ['script', 'service']
        sampler = next(c for c in collectors if isinstance(c, ProcessSampler))
        assert sampler.max_processes == 10
        executor = next(c for c in collectors if isinstance(c, ScriptExecutor))
        assert executor.jobs[0].id == 'x'
        prober = next(c for c in collectors if isinstance(c, ServiceProber))
        assert prober.targets == [ServiceTarget(name='nginx', port=80)]


class TestCli:

    def test_help(self):
        result = CliRunner().invoke(main, ['--help'])

        assert result.exit_code == 0
        assert 'Run the host telemetry agent' in result.output

    def test_debug_mode_uses_console(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        with patch('telemetry_agent.agent.TelemetryAgent') as mock_agent, \
             patch('telemetry_agent.agent.ReportDispatcher') as mock_reporter:
            result = CliRunner().invoke(main, ['--debug', '--host-id', 'web-01', '--interval', '5'])

        assert result.exit_code == 0, result.output
        assert 'debug mode' in result.output
        mock_reporter.assert_not_called()
        kwargs = mock_agent.call_args.kwargs
        assert kwargs['host_id'] == 'web-01'
        assert kwargs['collection_interval'] == 5
        assert type(kwargs['dispatcher']).__name__ == 'ConsoleDispatcher'
        mock_agent.return_value.run.assert_called_once()

    def test_reporting_mode_registers(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / 'agent-config.yaml').write_text(
            'server_addr: collector.internal:50051\nmanual_ip: 10.9.9.9\n'
        )

        with patch('telemetry_agent.agent.TelemetryAgent') as mock_agent, \
             patch('telemetry_agent.agent.ReportDispatcher') as mock_reporter, \
             patch('telemetry_agent.agent.CollectorClient') as mock_client:
            result = CliRunner().invoke(main, [])

        assert result.exit_code == 0, result.output
        mock_client.assert_called_once_with('collector.internal:50051')
        assert mock_reporter.call_args.kwargs['ip'] == '10.9.9.9'
        assert mock_agent.call_args.kwargs['dispatcher'] is mock_reporter.return_value

    def test_registration_failure_exits(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        with patch('telemetry_agent.agent.TelemetryAgent') as mock_agent, \
             patch('telemetry_agent.agent.ReportDispatcher',
                   side_effect=RegistrationError('RegisterAgent', 'connection refused')), \
             patch('telemetry_agent.agent.CollectorClient'), \
             patch('telemetry_agent.agent.resolve_ip', return_value='10.0.0.1'):
            result = CliRunner().invoke(main, ['--server', 'nowhere:1'])

        assert result.exit_code == 1
        assert 'Failed to register' in result.output
        mock_agent.assert_not_called()

    def test_invalid_config_exits(self, tmp_path):
        config = tmp_path / 'bad.yaml'
        config.write_text('collect_interval: never\n')

        result = CliRunner().invoke(main, ['--config', str(config), '--debug'])

        assert result.exit_code == 1
        assert 'Invalid configuration' in result.output
