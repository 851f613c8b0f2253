"""
核心服务
"""

from agentbus.system.services.config_center import AgentBusConfig, ConfigCenter
from agentbus.system.services.logger import (
    Layer,
    LoggerMixin,
    get_logger,
    setup_logging,
    trace_context,
)

__all__ = [
    "AgentBusConfig",
    "ConfigCenter",
    "Layer",
    "LoggerMixin",
    "get_logger",
    "setup_logging",
    "trace_context",
]
