"""
系统层 (System Layer)

- 核心服务：配置中心、日志
- Broker：任务通道传输、结果存储、任务 Broker
"""

from agentbus.system.services.config_center import ConfigCenter
from agentbus.system.services.logger import get_logger

__all__ = ["ConfigCenter", "get_logger"]
