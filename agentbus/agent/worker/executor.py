"""
执行器注册表与执行上下文

Executor 是按 agent_type 注册的可插拔执行能力：
    handler(prompt: str, context: ExecutionContext) -> Any

- 支持同步函数和协程函数，同步函数在线程池中执行
- 返回值必须可 JSON 序列化，作为 TaskResult.data
- 通过 context.report_progress() 上报进度

执行上下文同时挂在 contextvar 上，深层调用的 Agent 代码
可以用 current_context() 取到，而不必层层传参。
"""

from __future__ import annotations

import asyncio
import contextvars
import importlib
import inspect
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from agentbus.system.broker.protocol import TaskProgress, utc_now
from agentbus.system.services.logger import WorkerLoggerMixin

if TYPE_CHECKING:
    from agentbus.system.broker.task_broker import TaskBroker


ExecutorHandler = Callable[[str, "ExecutionContext"], Any]

_current_context: contextvars.ContextVar[Optional["ExecutionContext"]] = contextvars.ContextVar(
    "agentbus_execution_context", default=None,
)


def current_context() -> Optional["ExecutionContext"]:
    """获取当前正在执行的任务上下文（不在任务内时为 None）"""
    return _current_context.get()


class ExecutionContext(WorkerLoggerMixin):
    """
    单个任务的执行上下文

    记录当前 Agent/模型名称和累计 token 用量，进度消息会带上这些信息。
    """

    def __init__(
        self,
        task_id: str,
        agent_type: str,
        broker: Optional["TaskBroker"] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """
        Args:
            task_id: 任务ID
            agent_type: Agent 类型
            broker: 用于发布进度的 Broker（为空时进度只记录日志）
            loop: 所属事件循环，同步执行器从线程中上报进度时使用
        """
        if not task_id:
            raise ValueError("task_id 不能为空")
        self.task_id = task_id
        self.agent_type = agent_type
        self.agent_name: Optional[str] = None
        self.model_id: Optional[str] = None
        self.input_tokens = 0
        self.output_tokens = 0
        self.progress_count = 0
        self._broker = broker
        self._loop = loop

    def add_token_usage(self, input_tokens: int, output_tokens: int) -> None:
        """累计 token 用量"""
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens

    def build_progress(self, message: str, tool_name: Optional[str] = None) -> TaskProgress:
        """构造进度消息，token 为 0 时不填"""
        return TaskProgress(
            task_id=self.task_id,
            message=message,
            timestamp=utc_now(),
            tool_name=tool_name,
            agent_name=self.agent_name,
            model_id=self.model_id,
            input_tokens=self.input_tokens or None,
            output_tokens=self.output_tokens or None,
        )

    async def report_progress(self, message: str, tool_name: Optional[str] = None) -> bool:
        """
        上报进度（尽力而为）

        Returns:
            是否发布成功
        """
        self.progress_count += 1
        self.log_debug(f"进度: {message}", trace_id=self.task_id)
        if self._broker is None:
            return False
        return await self._broker.publish_progress(self.build_progress(message, tool_name))

    def report_progress_threadsafe(self, message: str, tool_name: Optional[str] = None) -> None:
        """
        从工作线程上报进度

        同步执行器在线程池中运行，不能直接 await，
        这里把发布调度回事件循环，不等待结果。
        """
        if self._loop is None:
            raise RuntimeError("上下文未绑定事件循环")
        asyncio.run_coroutine_threadsafe(self.report_progress(message, tool_name), self._loop)

    def activate(self) -> contextvars.Token:
        """设置为当前上下文"""
        return _current_context.set(self)

    @staticmethod
    def deactivate(token: contextvars.Token) -> None:
        """恢复之前的上下文"""
        _current_context.reset(token)


@dataclass
class ExecutorDefinition:
    """执行器定义"""
    agent_type: str
    handler: ExecutorHandler
    is_async: bool
    description: str = ""
    tags: List[str] = field(default_factory=list)

    async def run(self, prompt: str, context: ExecutionContext) -> Any:
        """执行一次；同步函数放到线程池并复制当前 contextvars"""
        if self.is_async:
            return await self.handler(prompt, context)
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        return await loop.run_in_executor(None, lambda: ctx.run(self.handler, prompt, context))


def normalize_agent_type(agent_type: str) -> str:
    """agent_type 查找时大小写不敏感"""
    return agent_type.strip().lower()


class ExecutorRegistry(WorkerLoggerMixin):
    """
    执行器注册表

    agent_type 是开放的字符串标签，不是封闭枚举。
    """

    def __init__(self):
        self._executors: Dict[str, ExecutorDefinition] = {}

    def register(
        self,
        agent_type: str,
        handler: ExecutorHandler,
        description: str = "",
        tags: Optional[List[str]] = None,
    ) -> None:
        """
        注册执行器

        Args:
            agent_type: Agent 类型标签
            handler: 处理函数 handler(prompt, context)
            description: 描述
            tags: 标签
        """
        if not agent_type or not agent_type.strip():
            raise ValueError("agent_type 不能为空")
        if not callable(handler):
            raise TypeError(f"执行器不可调用: {handler!r}")

        key = normalize_agent_type(agent_type)
        if key in self._executors:
            self.logger.warning(f"执行器 '{agent_type}' 已存在，将被覆盖")

        self._executors[key] = ExecutorDefinition(
            agent_type=key,
            handler=handler,
            is_async=inspect.iscoroutinefunction(handler),
            description=description or handler.__doc__ or "",
            tags=tags or [],
        )
        self.logger.debug(f"注册执行器: {key}")

    def register_decorator(
        self,
        agent_type: Optional[str] = None,
        description: str = "",
        **kwargs: Any,
    ) -> Callable[[ExecutorHandler], ExecutorHandler]:
        """
        装饰器方式注册执行器

        Args:
            agent_type: Agent 类型（默认使用函数名）
        """
        def decorator(handler: ExecutorHandler) -> ExecutorHandler:
            self.register(agent_type or handler.__name__, handler, description=description, **kwargs)
            return handler
        return decorator

    def register_from_path(self, agent_type: str, target: str) -> None:
        """
        按 "package.module:callable" 路径注册执行器

        Raises:
            ValueError: 路径格式错误
            ImportError / AttributeError: 模块或对象不存在
        """
        self.register(agent_type, load_handler(target))

    def unregister(self, agent_type: str) -> bool:
        """注销执行器"""
        return self._executors.pop(normalize_agent_type(agent_type), None) is not None

    def get(self, agent_type: str) -> Optional[ExecutorDefinition]:
        """按 agent_type 查找执行器，未注册返回 None"""
        return self._executors.get(normalize_agent_type(agent_type))

    def list_agent_types(self) -> List[str]:
        """已注册的 agent_type 列表"""
        return sorted(self._executors)

    def __contains__(self, agent_type: str) -> bool:
        return normalize_agent_type(agent_type) in self._executors

    def __len__(self) -> int:
        return len(self._executors)


def load_handler(target: str) -> ExecutorHandler:
    """
    从 "package.module:callable" 路径加载处理函数

    callable 部分支持点号访问嵌套属性，例如 "pkg.agents:Research.run"。
    """
    module_name, sep, attr_path = target.partition(":")
    if not sep or not module_name or not attr_path:
        raise ValueError(f"执行器路径格式应为 'module:callable': {target}")

    obj: Any = importlib.import_module(module_name)
    for attr in attr_path.split("."):
        obj = getattr(obj, attr)

    if not callable(obj):
        raise TypeError(f"执行器不可调用: {target}")
    return obj
