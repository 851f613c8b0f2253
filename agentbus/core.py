"""
AgentBus 核心入口

按配置组装传输、结果存储与 Broker，并创建提交端 TaskService
与 Worker 端 WorkerDispatcher，统一管理生命周期。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

from agentbus.system.services.config_center import AgentBusConfig, ConfigCenter
from agentbus.system.services.logger import get_logger

if TYPE_CHECKING:
    from agentbus.agent.client.task_service import TaskService
    from agentbus.agent.worker.dispatcher import WorkerDispatcher
    from agentbus.agent.worker.executor import ExecutorRegistry
    from agentbus.system.broker.result_store import ResultStore
    from agentbus.system.broker.task_broker import TaskBroker
    from agentbus.system.broker.transport import TaskTransport

logger = get_logger(__name__)


class AgentBus:
    """
    AgentBus 系统主类

    用法:
        async with AgentBus("configs/agentbus.yaml") as bus:
            service = bus.create_task_service()
            task_id = await service.submit_task("research", "...")
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        config: Optional[AgentBusConfig] = None,
    ):
        """
        Args:
            config_path: 配置文件路径，默认 configs/agentbus.yaml
            config: 直接传入的配置（优先于配置文件）
        """
        self.config_center = ConfigCenter(config_path) if config_path else ConfigCenter()
        self._config = config
        self._transport: Optional["TaskTransport"] = None
        self._store: Optional["ResultStore"] = None
        self._broker: Optional["TaskBroker"] = None
        self._services: List["TaskService"] = []
        self._dispatchers: List["WorkerDispatcher"] = []
        self._initialized = False

    @property
    def config(self) -> AgentBusConfig:
        if self._config is None:
            raise RuntimeError("AgentBus 尚未初始化")
        return self._config

    @property
    def broker(self) -> "TaskBroker":
        if self._broker is None:
            raise RuntimeError("AgentBus 尚未初始化")
        return self._broker

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """
        加载配置并连接传输

        Raises:
            TransportError: 无法连接
        """
        if self._initialized:
            return

        if self._config is None:
            self._config = await self.config_center.load()
        config = self._config

        self._transport = create_transport(config)
        self._store = create_result_store(config)
        try:
            await self._transport.initialize()
        except Exception:
            await self._transport.close()
            await self._store.close()
            raise

        from agentbus.system.broker.task_broker import TaskBroker
        self._broker = TaskBroker(
            self._transport,
            self._store,
            overflow_threshold_bytes=config.broker.overflow_threshold_bytes,
            overflow_ttl=config.broker.overflow_ttl_seconds,
        )
        self._initialized = True
        logger.info(
            f"AgentBus 初始化完成 (传输={config.transport.backend}, 存储={config.store.backend})"
        )

    def create_registry(self) -> "ExecutorRegistry":
        """创建执行器注册表：内置执行器 + 配置中声明的执行器"""
        from agentbus.agent.worker.builtin import create_builtin_registry
        registry = create_builtin_registry()
        for agent_type, target in self.config.worker.executors.items():
            registry.register_from_path(agent_type, target)
            logger.info(f"已加载执行器: {agent_type} -> {target}")
        return registry

    def create_task_service(self) -> "TaskService":
        """创建提交端任务服务，随 shutdown() 一起释放"""
        from agentbus.agent.client.task_service import TaskService
        service = TaskService(
            self.broker,
            default_wait_timeout=self.config.client.default_wait_timeout_seconds,
            completed_history_size=self.config.client.completed_history_size,
        )
        self._services.append(service)
        return service

    def create_dispatcher(self, registry: Optional["ExecutorRegistry"] = None) -> "WorkerDispatcher":
        """创建 Worker 调度器，随 shutdown() 一起停止"""
        from agentbus.agent.worker.dispatcher import WorkerDispatcher
        worker = self.config.worker
        dispatcher = WorkerDispatcher(
            self.broker,
            registry if registry is not None else self.create_registry(),
            max_concurrent=worker.max_concurrent,
            task_timeout=worker.task_timeout_seconds,
            shutdown_timeout=worker.shutdown_timeout_seconds,
            published_history_size=worker.published_history_size,
        )
        self._dispatchers.append(dispatcher)
        return dispatcher

    async def shutdown(self) -> None:
        """停止调度器、释放任务服务并关闭连接"""
        if not self._initialized:
            return
        logger.info("正在关闭 AgentBus...")

        for dispatcher in self._dispatchers:
            await dispatcher.stop()
        for service in self._services:
            await service.dispose()
        self._dispatchers.clear()
        self._services.clear()

        await self.broker.close()
        self._initialized = False
        logger.info("AgentBus 已关闭")

    async def __aenter__(self) -> AgentBus:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()


def create_transport(config: AgentBusConfig) -> "TaskTransport":
    """按配置创建传输"""
    from agentbus.system.broker.transport import InMemoryTransport, RedisTransport
    if config.transport.backend == "memory":
        return InMemoryTransport(queue_maxsize=config.transport.queue_maxsize)
    return RedisTransport(config.transport.connection_string)


def create_result_store(config: AgentBusConfig) -> "ResultStore":
    """按配置创建结果存储"""
    from agentbus.system.broker.result_store import InMemoryResultStore, RedisResultStore
    if config.store.backend == "memory":
        return InMemoryResultStore()
    return RedisResultStore(config.store_connection_string)
