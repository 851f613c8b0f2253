"""
Pytest 配置和公共 fixtures

AgentBus 测试配置：默认使用进程内传输与结果存储，不依赖 Redis。
"""

import sys
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio

# 添加项目根目录到路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from agentbus.agent.client.task_service import TaskService
from agentbus.agent.worker.dispatcher import WorkerDispatcher
from agentbus.agent.worker.executor import ExecutorRegistry
from agentbus.system.broker.result_store import InMemoryResultStore
from agentbus.system.broker.task_broker import TaskBroker
from agentbus.system.broker.transport import InMemoryTransport


# ============== 时钟 ==============

class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# ============== Broker Fixtures ==============

@pytest.fixture
def transport() -> InMemoryTransport:
    """进程内传输"""
    return InMemoryTransport(queue_maxsize=100)


@pytest.fixture
def result_store(fake_clock: FakeClock) -> InMemoryResultStore:
    """进程内结果存储（可控时钟）"""
    return InMemoryResultStore(clock=fake_clock)


@pytest_asyncio.fixture
async def broker(transport, result_store) -> AsyncGenerator[TaskBroker, None]:
    """小阈值的 Broker，便于触发溢出"""
    broker = TaskBroker(transport, result_store, overflow_threshold_bytes=256, overflow_ttl=60.0)
    yield broker
    await broker.close()


@pytest.fixture
def registry() -> ExecutorRegistry:
    """空的执行器注册表"""
    return ExecutorRegistry()


@pytest_asyncio.fixture
async def dispatcher(broker, registry) -> AsyncGenerator[WorkerDispatcher, None]:
    """未启动的 Worker 调度器，测试结束时自动停止"""
    dispatcher = WorkerDispatcher(broker, registry, max_concurrent=2, task_timeout=5.0, shutdown_timeout=2.0)
    yield dispatcher
    await dispatcher.stop()


@pytest_asyncio.fixture
async def task_service(broker) -> AsyncGenerator[TaskService, None]:
    """提交端任务服务"""
    service = TaskService(broker, default_wait_timeout=5.0)
    yield service
    await service.dispose()


# ============== 环境变量 ==============

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """清理测试环境变量"""
    monkeypatch.delenv("AGENTBUS_REDIS_URL", raising=False)
    monkeypatch.delenv("AGENTBUS_LOG_LEVEL", raising=False)
