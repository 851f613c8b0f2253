"""
任务 Broker

话题：
- agents:tasks                 任务请求
- agents:results:{taskId}      终态结果（每个任务一条）
- agents:progress:{taskId}     进度（尽力而为）

存储键：
- agents:results:data:{taskId} 溢出的大结果
"""

from agentbus.system.broker.protocol import (
    TASKS_TOPIC,
    AgentBusError,
    ProtocolError,
    TaskProgress,
    TaskRequest,
    TaskResult,
    TaskStatus,
    TransportError,
    progress_topic,
    result_topic,
)
from agentbus.system.broker.result_store import (
    InMemoryResultStore,
    RedisResultStore,
    ResultStore,
    reference_for,
)
from agentbus.system.broker.task_broker import OVERFLOW_REF_KEY, TaskBroker
from agentbus.system.broker.transport import (
    InMemoryTransport,
    RedisTransport,
    Subscription,
    TaskTransport,
)

__all__ = [
    "TASKS_TOPIC",
    "OVERFLOW_REF_KEY",
    "AgentBusError",
    "ProtocolError",
    "TransportError",
    "TaskProgress",
    "TaskRequest",
    "TaskResult",
    "TaskStatus",
    "progress_topic",
    "result_topic",
    "ResultStore",
    "InMemoryResultStore",
    "RedisResultStore",
    "reference_for",
    "TaskBroker",
    "TaskTransport",
    "Subscription",
    "InMemoryTransport",
    "RedisTransport",
]
