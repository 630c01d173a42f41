"""
logcore: structured JSON logging for the telemetry agent

Every agent module logs through get_logger(__name__); the CLI calls
setup_logging once to pick level, format and optional file output.
"""

from logcore.logger import JSONFormatter, get_logger, setup_logging

__all__ = ['JSONFormatter', 'get_logger', 'setup_logging']
__version__ = '1.1.0'
