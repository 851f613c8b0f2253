"""
配置中心

提供集中式配置管理。
支持从.env文件加载环境变量、YAML配置中的 ${VAR} 引用展开，
以及少量环境变量覆盖（AGENTBUS_REDIS_URL / AGENTBUS_LOG_LEVEL）。
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from agentbus.system.services.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "configs/agentbus.yaml"
DEFAULT_REDIS_CONNECTION = "localhost:6379"

ENV_REDIS_URL = "AGENTBUS_REDIS_URL"
ENV_LOG_LEVEL = "AGENTBUS_LOG_LEVEL"


def load_dotenv(env_path: Optional[Path] = None) -> bool:
    """
    加载.env文件中的环境变量

    Args:
        env_path: .env文件路径，默认从当前目录向上查找

    Returns:
        是否成功加载
    """
    if env_path is None:
        current = Path.cwd()
        env_path = current / ".env"

        if not env_path.exists():
            for parent in current.parents:
                candidate = parent / ".env"
                if candidate.exists():
                    env_path = candidate
                    break

    if not env_path or not env_path.exists():
        logger.debug(f".env文件不存在: {env_path}")
        return False

    logger.info(f"加载环境变量文件: {env_path}")

    try:
        with open(env_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()

                if not line or line.startswith("#"):
                    continue

                if "=" in line:
                    key, _, value = line.partition("=")
                    key = key.strip()
                    value = value.strip()

                    if (value.startswith('"') and value.endswith('"')) or \
                       (value.startswith("'") and value.endswith("'")):
                        value = value[1:-1]

                    # 不覆盖已有值
                    if key and key not in os.environ:
                        os.environ[key] = value
                        logger.debug(f"设置环境变量: {key}")

        return True
    except OSError as e:
        logger.warning(f"加载.env文件失败: {e}")
        return False


def expand_env_vars(value: Any) -> Any:
    """
    展开字符串中的环境变量引用

    支持格式:
    - ${VAR_NAME}
    - ${VAR_NAME:-default}
    - $VAR_NAME

    未定义且没有默认值的变量保持原样。
    """
    if isinstance(value, str):
        pattern = r'\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)'

        def replace(match):
            expr = match.group(1)
            if expr is not None and ":-" in expr:
                var_name, default = expr.split(":-", 1)
                return os.environ.get(var_name, default)
            var_name = expr or match.group(2)
            return os.environ.get(var_name, match.group(0))

        return re.sub(pattern, replace, value)
    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    else:
        return value


class SystemConfig(BaseModel):
    """系统配置"""
    name: str = "AgentBus"
    log_level: str = "INFO"
    debug: bool = False


class TransportConfig(BaseModel):
    """发布-订阅传输配置"""
    backend: str = "redis"  # redis, memory
    connection_string: str = DEFAULT_REDIS_CONNECTION
    queue_maxsize: int = 1000  # 仅 memory 后端使用

    @field_validator("backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("redis", "memory"):
            raise ValueError(f"不支持的传输后端: {value}")
        return value


class StoreConfig(BaseModel):
    """结果存储配置"""
    backend: str = "redis"  # redis, memory
    connection_string: Optional[str] = None  # 为空时沿用 transport 的连接串

    @field_validator("backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("redis", "memory"):
            raise ValueError(f"不支持的存储后端: {value}")
        return value


class BrokerConfig(BaseModel):
    """Broker 配置"""
    overflow_threshold_bytes: int = Field(default=64 * 1024, gt=0)
    overflow_ttl_seconds: float = Field(default=24 * 3600, gt=0)


class WorkerConfig(BaseModel):
    """Worker 配置"""
    max_concurrent: int = Field(default=4, ge=1)
    task_timeout_seconds: float = Field(default=600.0, gt=0)
    shutdown_timeout_seconds: float = Field(default=10.0, ge=0)
    published_history_size: int = Field(default=10000, ge=1)
    executors: Dict[str, str] = Field(default_factory=dict)  # agent_type -> "module:callable"


class ClientConfig(BaseModel):
    """提交端配置"""
    default_wait_timeout_seconds: float = Field(default=300.0, gt=0)
    completed_history_size: int = Field(default=10000, ge=1)


class AgentBusConfig(BaseModel):
    """AgentBus 完整配置"""
    system: SystemConfig = SystemConfig()
    transport: TransportConfig = TransportConfig()
    store: StoreConfig = StoreConfig()
    broker: BrokerConfig = BrokerConfig()
    worker: WorkerConfig = WorkerConfig()
    client: ClientConfig = ClientConfig()

    @property
    def store_connection_string(self) -> str:
        """结果存储实际使用的连接串"""
        return self.store.connection_string or self.transport.connection_string


def apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    """把环境变量覆盖写入原始配置字典"""
    redis_url = os.environ.get(ENV_REDIS_URL)
    if redis_url:
        raw.setdefault("transport", {})["connection_string"] = redis_url
        raw.setdefault("store", {})["connection_string"] = redis_url

    log_level = os.environ.get(ENV_LOG_LEVEL)
    if log_level:
        raw.setdefault("system", {})["log_level"] = log_level

    return raw


class ConfigCenter:
    """
    配置中心

    负责加载与管理配置。
    """

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH):
        """
        初始化配置中心

        Args:
            config_path: 配置文件路径
        """
        self.config_path = Path(config_path)
        self._config: Optional[AgentBusConfig] = None
        self._raw_config: Dict[str, Any] = {}

    async def load(self) -> AgentBusConfig:
        """
        加载配置文件

        流程:
        1. 加载.env文件中的环境变量
        2. 加载YAML配置文件
        3. 展开配置中的环境变量引用
        4. 应用环境变量覆盖
        5. 解析为配置对象

        Returns:
            AgentBusConfig 实例
        """
        load_dotenv(self.config_path.parent.parent / ".env")

        if self.config_path.exists():
            logger.info(f"加载配置文件: {self.config_path}")
            with open(self.config_path, "r", encoding="utf-8") as f:
                self._raw_config = yaml.safe_load(f) or {}
        else:
            logger.warning(f"配置文件不存在，使用默认配置: {self.config_path}")
            self._raw_config = {}

        self._raw_config = expand_env_vars(self._raw_config)
        self._raw_config = apply_env_overrides(self._raw_config)

        self._config = AgentBusConfig(**self._raw_config)
        return self._config

    async def reload(self) -> AgentBusConfig:
        """重新加载配置"""
        logger.info("重新加载配置...")
        return await self.load()

    @property
    def config(self) -> AgentBusConfig:
        """获取当前配置"""
        if self._config is None:
            raise RuntimeError("配置尚未加载，请先调用 load()")
        return self._config

    def get(self, key: str, default: Any = None) -> Any:
        """
        获取原始配置值

        Args:
            key: 配置键，支持点号分隔的嵌套键
            default: 默认值
        """
        value = self._raw_config

        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value
