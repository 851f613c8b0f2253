"""
配置中心单元测试
"""

import os

import pytest
from pydantic import ValidationError

from agentbus.system.services.config_center import (
    AgentBusConfig,
    ConfigCenter,
    expand_env_vars,
    load_dotenv,
)


def write_config(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class TestExpandEnvVars:
    """环境变量展开测试"""

    def test_braced_and_plain(self, monkeypatch):
        monkeypatch.setenv("AB_HOST", "cache")
        assert expand_env_vars("${AB_HOST}:6379") == "cache:6379"
        assert expand_env_vars("$AB_HOST") == "cache"

    def test_default_value(self, monkeypatch):
        monkeypatch.delenv("AB_MISSING", raising=False)
        assert expand_env_vars("${AB_MISSING:-localhost}:6379") == "localhost:6379"

    def test_undefined_kept(self, monkeypatch):
        monkeypatch.delenv("AB_MISSING", raising=False)
        assert expand_env_vars("${AB_MISSING}") == "${AB_MISSING}"

    def test_nested(self, monkeypatch):
        monkeypatch.setenv("AB_X", "1")
        assert expand_env_vars({"a": ["${AB_X}", 2], "b": {"c": "$AB_X"}}) == {"a": ["1", 2], "b": {"c": "1"}}


class TestLoadDotenv:
    """.env 加载测试"""

    def test_missing_file(self, tmp_path):
        assert load_dotenv(tmp_path / ".env") is False

    def test_existing_env_not_overridden(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AB_KEEP", "original")
        monkeypatch.delenv("AB_NEW", raising=False)
        env = tmp_path / ".env"
        env.write_text("# comment\nAB_KEEP=changed\nAB_NEW=\"value\"\n", encoding="utf-8")

        assert load_dotenv(env) is True
        assert os.environ["AB_KEEP"] == "original"
        assert os.environ["AB_NEW"] == "value"
        monkeypatch.delenv("AB_NEW")


class TestAgentBusConfig:
    """配置模型测试"""

    def test_defaults(self):
        config = AgentBusConfig()
        assert config.transport.backend == "redis"
        assert config.transport.connection_string == "localhost:6379"
        assert config.broker.overflow_threshold_bytes == 64 * 1024
        assert config.broker.overflow_ttl_seconds == 86400
        assert config.worker.max_concurrent == 4
        assert config.worker.task_timeout_seconds == 600
        assert config.client.default_wait_timeout_seconds == 300

    def test_store_connection_falls_back_to_transport(self):
        config = AgentBusConfig(transport={"connection_string": "cache:6380"})
        assert config.store_connection_string == "cache:6380"
        config = AgentBusConfig(transport={"connection_string": "a:1"}, store={"connection_string": "b:2"})
        assert config.store_connection_string == "b:2"

    def test_backend_validated(self):
        with pytest.raises(ValidationError):
            AgentBusConfig(transport={"backend": "kafka"})
        assert AgentBusConfig(store={"backend": "MEMORY"}).store.backend == "memory"

    def test_limits_validated(self):
        with pytest.raises(ValidationError):
            AgentBusConfig(worker={"max_concurrent": 0})
        with pytest.raises(ValidationError):
            AgentBusConfig(broker={"overflow_threshold_bytes": 0})


class TestConfigCenter:
    """配置中心测试"""

    @pytest.mark.asyncio
    async def test_missing_file_uses_defaults(self, tmp_path):
        center = ConfigCenter(str(tmp_path / "configs" / "none.yaml"))
        config = await center.load()
        assert config == AgentBusConfig()

    @pytest.mark.asyncio
    async def test_config_before_load_raises(self, tmp_path):
        with pytest.raises(RuntimeError):
            ConfigCenter(str(tmp_path / "x.yaml")).config

    @pytest.mark.asyncio
    async def test_load_yaml(self, tmp_path):
        path = write_config(tmp_path / "configs" / "agentbus.yaml", """
transport:
  backend: memory
worker:
  max_concurrent: 8
  executors:
    research: myagents.research:run
""")
        center = ConfigCenter(str(path))
        config = await center.load()
        assert config.transport.backend == "memory"
        assert config.worker.max_concurrent == 8
        assert config.worker.executors == {"research": "myagents.research:run"}
        assert center.get("worker.max_concurrent") == 8
        assert center.get("worker.missing", "default") == "default"

    @pytest.mark.asyncio
    async def test_env_overrides(self, tmp_path, monkeypatch):
        path = write_config(tmp_path / "configs" / "agentbus.yaml", """
system:
  log_level: INFO
transport:
  connection_string: localhost:6379
store:
  connection_string: localhost:6379
""")
        monkeypatch.setenv("AGENTBUS_REDIS_URL", "redis://prod:6379/1")
        monkeypatch.setenv("AGENTBUS_LOG_LEVEL", "DEBUG")

        config = await ConfigCenter(str(path)).load()
        assert config.transport.connection_string == "redis://prod:6379/1"
        assert config.store_connection_string == "redis://prod:6379/1"
        assert config.system.log_level == "DEBUG"

    @pytest.mark.asyncio
    async def test_dotenv_next_to_project_root(self, tmp_path, monkeypatch):
        monkeypatch.delenv("AB_REDIS_HOST", raising=False)
        (tmp_path / ".env").write_text("AB_REDIS_HOST=from-dotenv\n", encoding="utf-8")
        path = write_config(tmp_path / "configs" / "agentbus.yaml", """
transport:
  connection_string: "${AB_REDIS_HOST}:6379"
""")
        config = await ConfigCenter(str(path)).load()
        assert config.transport.connection_string == "from-dotenv:6379"
        monkeypatch.delenv("AB_REDIS_HOST")

    @pytest.mark.asyncio
    async def test_reload(self, tmp_path):
        path = write_config(tmp_path / "configs" / "agentbus.yaml", "worker:\n  max_concurrent: 2\n")
        center = ConfigCenter(str(path))
        assert (await center.load()).worker.max_concurrent == 2

        path.write_text("worker:\n  max_concurrent: 3\n", encoding="utf-8")
        assert (await center.reload()).worker.max_concurrent == 3
        assert center.config.worker.max_concurrent == 3
