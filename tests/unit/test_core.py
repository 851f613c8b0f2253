"""
AgentBus 入口单元测试
"""

import pytest

from agentbus import AgentBus
from agentbus.core import create_result_store, create_transport
from agentbus.system.broker.protocol import TaskStatus
from agentbus.system.broker.result_store import InMemoryResultStore, RedisResultStore
from agentbus.system.broker.transport import InMemoryTransport, RedisTransport
from agentbus.system.services.config_center import AgentBusConfig


def memory_config(**overrides) -> AgentBusConfig:
    raw = {
        "transport": {"backend": "memory"},
        "store": {"backend": "memory"},
        "worker": {"max_concurrent": 2, "task_timeout_seconds": 5, "shutdown_timeout_seconds": 1},
        "client": {"default_wait_timeout_seconds": 5},
    }
    raw.update(overrides)
    return AgentBusConfig(**raw)


class TestFactories:
    """后端工厂测试"""

    @pytest.mark.asyncio
    async def test_memory_backends(self):
        config = memory_config()
        transport = create_transport(config)
        store = create_result_store(config)
        assert isinstance(transport, InMemoryTransport)
        assert isinstance(store, InMemoryResultStore)
        await transport.close()
        await store.close()

    @pytest.mark.asyncio
    async def test_redis_backends(self):
        config = AgentBusConfig(transport={"connection_string": "cache:6380"})
        transport = create_transport(config)
        store = create_result_store(config)
        assert isinstance(transport, RedisTransport)
        assert isinstance(store, RedisResultStore)
        await transport.close()
        await store.close()


class TestAgentBus:
    """AgentBus 生命周期测试"""

    @pytest.mark.asyncio
    async def test_accessors_before_initialize(self):
        bus = AgentBus(config=memory_config())
        assert not bus.is_initialized
        with pytest.raises(RuntimeError):
            bus.broker

    @pytest.mark.asyncio
    async def test_loads_config_file(self, tmp_path):
        path = tmp_path / "configs" / "agentbus.yaml"
        path.parent.mkdir()
        path.write_text(
            "transport:\n  backend: memory\nstore:\n  backend: memory\nworker:\n  max_concurrent: 3\n",
            encoding="utf-8",
        )
        async with AgentBus(str(path)) as bus:
            assert bus.is_initialized
            assert bus.config.worker.max_concurrent == 3
            assert bus.create_dispatcher().get_stats()["max_concurrent"] == 3
        assert not bus.is_initialized

    @pytest.mark.asyncio
    async def test_registry_includes_configured_executors(self):
        config = memory_config(worker={"executors": {"Upper": "agentbus.agent.worker.builtin:echo_executor"}})
        async with AgentBus(config=config) as bus:
            registry = bus.create_registry()
            assert registry.list_agent_types() == ["echo", "upper"]

    @pytest.mark.asyncio
    async def test_echo_round_trip(self):
        async with AgentBus(config=memory_config()) as bus:
            dispatcher = bus.create_dispatcher()
            await dispatcher.start()
            service = bus.create_task_service()

            task_id = await service.submit_task("echo", "你好")
            result = await service.wait_for_result(task_id, timeout=2.0)
            assert result.status == TaskStatus.COMPLETED
            assert result.data == {"text": "你好", "agentType": "echo"}

    @pytest.mark.asyncio
    async def test_shutdown_stops_components(self):
        bus = AgentBus(config=memory_config())
        await bus.initialize()
        dispatcher = bus.create_dispatcher()
        await dispatcher.start()
        service = bus.create_task_service()

        await bus.shutdown()
        assert not dispatcher.is_running
        assert service.is_disposed
        assert not bus.is_initialized
        # 重复关闭无副作用
        await bus.shutdown()
