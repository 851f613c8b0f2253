"""
提交端
"""

from agentbus.agent.client.task_service import TaskService, create_task_service

__all__ = ["TaskService", "create_task_service"]
