#!/usr/bin/env python3
"""
Telemetry agent daemon - collection and heartbeat loops.
"""

import logging
import signal
import sys
import threading
import time
from typing import Callable, List, Optional, Sequence

import click

from logcore import get_logger, setup_logging
from telemetry_agent.collectors import (
    Collector,
    CpuCollector,
    DiskCollector,
    LogTailer,
    MemoryCollector,
    NetworkCollector,
)
from telemetry_agent.config import AgentConfig, ConfigError, load_config
from telemetry_agent.dispatcher import ConsoleDispatcher, RegistrationError, ReportDispatcher, resolve_ip
from telemetry_agent.models import Snapshot
from telemetry_agent.process_sampler import ProcessSampler
from telemetry_agent.rpc import CollectorClient, RpcError
from telemetry_agent.scripts import ScriptExecutor
from telemetry_agent.services import ServiceProber

logger = get_logger(__name__)

HEARTBEAT_INTERVAL = 30


class TelemetryAgent:
    """Drives the collectors and hands each snapshot to the dispatcher"""

    def __init__(
        self,
        host_id: str,
        dispatcher,  # ReportDispatcher or ConsoleDispatcher
        collectors: Sequence[Collector],
        collection_interval: float = 10,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        clock: Callable[[], float] = time.time
    ):
        self.host_id = host_id
        self.dispatcher = dispatcher
        self.collectors: List[Collector] = list(collectors)
        self.collection_interval = collection_interval
        self.heartbeat_interval = heartbeat_interval
        self._clock = clock
        self._stop_event = threading.Event()
        self._heartbeat_thread: Optional[threading.Thread] = None

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signals gracefully"""
        logger.info(f"Received signal {signum}, shutting down")
        self.stop()

    def run(self):
        """Main daemon loop; returns once stop() is called"""
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, self._handle_shutdown)
            signal.signal(signal.SIGINT, self._handle_shutdown)

        logger.info(
            f"Agent started, host_id={self.host_id}, interval={self.collection_interval}s",
            extra={'context': {'collectors': [c.name() for c in self.collectors]}}
        )

        self._stop_event.clear()
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            daemon=True,
            name='heartbeat',
        )
        self._heartbeat_thread.start()

        try:
            while not self._stop_event.is_set():
                cycle_started = time.monotonic()
                try:
                    self.collect_and_report()
                except Exception:
                    logger.exception("Error in collection cycle")
                self._stop_event.wait(timeout=self.next_wait(time.monotonic() - cycle_started))
        finally:
            self._cleanup()

    def stop(self):
        self._stop_event.set()

    def next_wait(self, elapsed: float) -> float:
        """Time left in the current period, so cycles start every collection_interval"""
        return max(0.0, self.collection_interval - elapsed)

    def collect(self) -> Snapshot:
        """Run every collector; a failing one just leaves its key out"""
        timestamp = int(self._clock())
        payloads = []

        for collector in self.collectors:
            try:
                payloads.append(collector.collect())
            except Exception as e:
                logger.warning(
                    f"Error collecting {collector.name()}: {e}",
                    extra={'context': {'component': collector.name(), 'error': type(e).__name__}}
                )

        return Snapshot.assemble(self.host_id, timestamp, payloads)

    def collect_and_report(self) -> Snapshot:
        """Single collection cycle"""
        snapshot = self.collect()

        try:
            self.dispatcher.report(snapshot)
        except RpcError as e:
            logger.warning(f"Failed to report metrics: {e}")

        self.dispatcher.report_secondary(snapshot)

        logger.info(
            f"Cycle complete: {', '.join(snapshot.metrics()) or 'no data'}",
            extra={'context': {'timestamp': snapshot.timestamp}}
        )
        return snapshot

    def _heartbeat_loop(self):
        while not self._stop_event.wait(timeout=self.heartbeat_interval):
            try:
                self.dispatcher.heartbeat()
            except RpcError as e:
                logger.warning(f"Heartbeat failed: {e}")
            except Exception:
                logger.exception("Unexpected heartbeat error")

    def _cleanup(self):
        """Cleanup resources"""
        self._stop_event.set()
        if self._heartbeat_thread is not None:
            self._heartbeat_thread.join(timeout=self.heartbeat_interval)
            self._heartbeat_thread = None
        self.dispatcher.close()
        logger.info("Agent stopped")


def build_collectors(config: AgentConfig) -> List[Collector]:
    """Collector set in reporting order"""
    collectors: List[Collector] = [
        CpuCollector(),
        MemoryCollector(),
        DiskCollector(),
        NetworkCollector(),
        ProcessSampler(config.max_processes),
        LogTailer(config.effective_log_paths(), config.log_max_lines),
    ]

    if config.scripts:
        logger.info(f"Loaded {len(config.scripts)} scripts from config")
        collectors.append(ScriptExecutor(config.scripts))

    collectors.append(ServiceProber(config.service_targets()))
    return collectors


@click.command()
@click.option('--config', 'config_path', type=click.Path(exists=True), default=None,
              help='Path to agent-config.yaml')
@click.option('--server', default=None, help='Collector server address (e.g. localhost:50051)')
@click.option('--host-id', default=None, help='Host ID')
@click.option('--interval', type=click.IntRange(min=1), default=None,
              help='Collect interval in seconds')
@click.option('--debug', is_flag=True, default=False, help='Print metrics to console instead of reporting')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']),
              default='INFO', help='Agent log level')
@click.option('--log-file', type=click.Path(), default=None, help='Also write logs to this file')
def main(config_path: Optional[str], server: Optional[str], host_id: Optional[str],
         interval: Optional[int], debug: bool, log_level: str, log_file: Optional[str]):
    """Run the host telemetry agent"""
    setup_logging(level=getattr(logging, log_level), log_file=log_file)

    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"Invalid configuration: {e}", err=True)
        sys.exit(1)

    server_addr = server or config.server_addr
    host_id = host_id or config.host_id
    collect_interval = interval or config.collect_interval
    debug = debug or config.debug

    if debug:
        click.echo("Running in debug mode, metrics will be printed to console")
        dispatcher = ConsoleDispatcher()
    else:
        client = CollectorClient(server_addr)
        try:
            dispatcher = ReportDispatcher(
                client,
                host_id=host_id,
                ip=resolve_ip(config.manual_ip),
                tags=config.tags
            )
        except RegistrationError as e:
            client.close()
            click.echo(f"Failed to register with {server_addr}: {e}", err=True)
            sys.exit(1)

    click.echo(f"Starting telemetry agent {host_id} (interval {collect_interval}s)")

    agent = TelemetryAgent(
        host_id=host_id,
        dispatcher=dispatcher,
        collectors=build_collectors(config),
        collection_interval=collect_interval
    )
    agent.run()


if __name__ == '__main__':
    main()
