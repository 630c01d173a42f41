"""
telemetry_agent: lightweight host telemetry agent

Samples machine and process state, runs probe scripts and service checks,
and pushes the results to a central collection service.
"""

from telemetry_agent.agent import TelemetryAgent
from telemetry_agent.dispatcher import ConsoleDispatcher, ReportDispatcher
from telemetry_agent.process_sampler import ProcessSampler
from telemetry_agent.scripts import ScriptExecutor
from telemetry_agent.services import ServiceProber

__all__ = ['TelemetryAgent', 'ReportDispatcher', 'ConsoleDispatcher',
           'ProcessSampler', 'ScriptExecutor', 'ServiceProber']
__version__ = '1.0.0'
