"""
内置执行器

echo 用于部署后的冒烟测试：原样返回 prompt，不依赖任何模型。
"""

from typing import Any, Dict

from agentbus.agent.worker.executor import ExecutionContext, ExecutorRegistry

ECHO_AGENT_TYPE = "echo"


async def echo_executor(prompt: str, context: ExecutionContext) -> Dict[str, Any]:
    """原样返回 prompt"""
    context.agent_name = "echo"
    await context.report_progress("echoing prompt")
    return {"text": prompt, "agentType": ECHO_AGENT_TYPE}


def create_builtin_registry() -> ExecutorRegistry:
    """创建只含内置执行器的注册表"""
    registry = ExecutorRegistry()
    registry.register(ECHO_AGENT_TYPE, echo_executor, description="原样返回 prompt", tags=["builtin"])
    return registry
