"""
AgentBus - 异步 Agent 任务代理

前台客户端把耗时的 LLM 驱动任务交给后台 Worker 执行，不阻塞，
之后异步获得终态结果（completed / failed / cancelled），期间可选接收进度。

组成：
- Task Broker: 发布-订阅传输 + 大结果溢出存储
- Worker Dispatcher: 消费任务、按 agent_type 路由执行器、发布唯一终态结果
- Result Store: 带过期时间的结果存储
- Task Service: 提交端，维护 task_id -> Future 关联表

快速开始：
    from agentbus import AgentBus

    async with AgentBus("configs/agentbus.yaml") as bus:
        service = bus.create_task_service()
        task_id = await service.submit_research_task("调研异步任务队列")
        result = await service.wait_for_result(task_id, timeout=60)

CLI使用：
    agentbus worker -c configs/agentbus.yaml
    agentbus submit research "调研异步任务队列" --wait 60
"""

__version__ = "0.1.0"

from agentbus.core import AgentBus
from agentbus.system.broker.protocol import (
    AgentBusError,
    ProtocolError,
    TaskProgress,
    TaskRequest,
    TaskResult,
    TaskStatus,
    TransportError,
)

__all__ = [
    "AgentBus",
    "AgentBusError",
    "ProtocolError",
    "TransportError",
    "TaskProgress",
    "TaskRequest",
    "TaskResult",
    "TaskStatus",
    "__version__",
]
