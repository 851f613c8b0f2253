"""
Worker 端

WorkerDispatcher 消费任务并路由到 ExecutorRegistry 中注册的执行器。
"""

from agentbus.agent.worker.builtin import create_builtin_registry, echo_executor
from agentbus.agent.worker.dispatcher import WorkerDispatcher, create_worker_dispatcher
from agentbus.agent.worker.executor import (
    ExecutionContext,
    ExecutorDefinition,
    ExecutorRegistry,
    current_context,
    load_handler,
)

__all__ = [
    "WorkerDispatcher",
    "create_worker_dispatcher",
    "ExecutionContext",
    "ExecutorDefinition",
    "ExecutorRegistry",
    "current_context",
    "load_handler",
    "create_builtin_registry",
    "echo_executor",
]
