"""
Worker 调度器

从任务话题消费请求，按 agent_type 路由到执行器，并为每个任务发布且仅发布一次终态结果。

单个任务的处理流程：
    received -> routing -> executing -> publishing-{completed|failed|cancelled}

- 未知 agent_type: failed，不重试，不影响后续任务
- 执行超时: cancelled
- Worker 关闭: 正在执行和排队的任务 cancelled
- 执行器异常: failed，只携带异常消息，不带堆栈
"""

from __future__ import annotations

import asyncio
import json
from collections import OrderedDict
from typing import Any, Dict, Optional

from agentbus.agent.worker.executor import ExecutionContext, ExecutorRegistry
from agentbus.system.broker.protocol import (
    ProtocolError,
    TaskRequest,
    TaskResult,
    TaskStatus,
    TransportError,
    peek_task_id,
)
from agentbus.system.broker.task_broker import TaskBroker
from agentbus.system.services.logger import Layer, WorkerLoggerMixin, trace_context

SHUTDOWN_MESSAGE = "worker shutting down"
MALFORMED_MESSAGE = "malformed task request"

DEFAULT_MAX_CONCURRENT = 4
DEFAULT_TASK_TIMEOUT = 600.0
DEFAULT_SHUTDOWN_TIMEOUT = 10.0
DEFAULT_PUBLISHED_HISTORY = 10000


def unknown_agent_type_message(agent_type: str) -> str:
    return f"unknown agent type: {agent_type}"


def timeout_message(timeout: float) -> str:
    return f"execution timed out after {timeout:g}s"


async def _cancel_and_wait(task: asyncio.Task) -> None:
    """取消执行任务并等待它结束（结果不再使用）"""
    task.cancel()
    await asyncio.wait({task})


class WorkerDispatcher(WorkerLoggerMixin):
    """
    Worker 调度器

    读取循环在取下一条消息之前先占用一个并发槽位，
    超出并发上限的任务按到达顺序留在订阅缓冲中等待。
    """

    def __init__(
        self,
        broker: TaskBroker,
        registry: ExecutorRegistry,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        task_timeout: float = DEFAULT_TASK_TIMEOUT,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        published_history_size: int = DEFAULT_PUBLISHED_HISTORY,
    ):
        """
        初始化调度器

        Args:
            broker: 任务 Broker
            registry: 执行器注册表
            max_concurrent: 最大并发任务数
            task_timeout: 单个任务执行超时（秒）
            shutdown_timeout: 关闭时等待任务收尾的时间（秒）
            published_history_size: 记录已发布结果的任务ID数量上限
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent 必须大于等于 1")
        if task_timeout <= 0:
            raise ValueError("task_timeout 必须大于 0")
        if published_history_size < 1:
            raise ValueError("published_history_size 必须大于等于 1")

        self._broker = broker
        self._registry = registry
        self._max_concurrent = max_concurrent
        self._task_timeout = task_timeout
        self._shutdown_timeout = shutdown_timeout
        self._published_history_size = published_history_size

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._running = False
        self._stopped = asyncio.Event()
        self._listener_task: Optional[asyncio.Task] = None
        self._listener_error: Optional[BaseException] = None

        # task_id -> 执行中的 asyncio.Task（用于关闭时取消）
        self._tasks: Dict[str, asyncio.Task] = {}

        # 已发布终态结果的任务ID（有界，最近的在末尾）
        self._published: OrderedDict[str, None] = OrderedDict()

        # 统计
        self._received = 0
        self._completed = 0
        self._failed = 0
        self._cancelled = 0
        self._malformed = 0
        self._duplicates = 0
        self._publish_failures = 0

    @property
    def registry(self) -> ExecutorRegistry:
        return self._registry

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def running_task_ids(self) -> list:
        """正在执行的任务ID"""
        return list(self._tasks)

    # ============== 生命周期 ==============

    async def start(self) -> None:
        """
        启动调度器，返回时任务订阅已经生效

        Raises:
            TransportError: 无法订阅任务话题
        """
        if self._running:
            self.logger.warning("WorkerDispatcher 已在运行")
            return

        self._running = True
        self._stopped.clear()
        self._listener_error = None

        started = asyncio.Event()
        listener = asyncio.create_task(
            self._broker.subscribe_to_tasks(
                self._handle,
                on_invalid=self._handle_invalid,
                started=started,
            ),
            name="agentbus-worker-listener",
        )
        waiter = asyncio.create_task(started.wait())
        await asyncio.wait({listener, waiter}, return_when=asyncio.FIRST_COMPLETED)

        if not started.is_set():
            waiter.cancel()
            self._running = False
            self._stopped.set()
            error = listener.exception()
            if error is not None:
                raise error
            raise TransportError("任务订阅意外结束")

        self._listener_task = listener
        listener.add_done_callback(self._on_listener_done)
        self.log_info(
            f"WorkerDispatcher 已启动 (并发={self._max_concurrent}, 超时={self._task_timeout:g}s, "
            f"执行器={self._registry.list_agent_types()})"
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        停止调度器

        停止接收新任务，取消正在执行的任务（各自发布 cancelled 结果），
        最多等待 timeout 秒让它们收尾。
        """
        if not self._running:
            return
        self._running = False
        timeout = self._shutdown_timeout if timeout is None else timeout

        listener = self._listener_task
        self._listener_task = None
        if listener is not None and not listener.done():
            listener.cancel()
            await asyncio.gather(listener, return_exceptions=True)

        # 让刚创建的处理任务先进入执行，取消时才能走到各自的收尾逻辑
        await asyncio.sleep(0)
        running = list(self._tasks.values())
        if running:
            self.log_info(f"正在取消 {len(running)} 个执行中的任务")
            for task in running:
                task.cancel()
            _, pending = await asyncio.wait(running, timeout=timeout)
            if pending:
                self.log_warning(f"{len(pending)} 个任务在 {timeout:g}s 内未能结束")

        self._stopped.set()
        self.log_info("WorkerDispatcher 已停止")

    async def run(self) -> None:
        """启动并一直运行到 stop() 被调用或任务订阅异常结束"""
        await self.start()
        try:
            await self._stopped.wait()
        finally:
            await self.stop()
        if self._listener_error is not None:
            raise self._listener_error

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def _on_listener_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._listener_error = error
            self.log_error(f"任务订阅异常结束: {error}")
        self._stopped.set()

    # ============== 消息处理 ==============

    async def _handle(self, request: TaskRequest) -> None:
        """任务话题回调：占用并发槽位后派生处理任务"""
        self._received += 1
        task_id = request.task_id

        if task_id in self._tasks or task_id in self._published:
            self._duplicates += 1
            self.log_error(f"重复的任务请求，已忽略: {task_id}", trace_id=task_id)
            return

        try:
            await self._semaphore.acquire()
        except asyncio.CancelledError:
            # 排队期间 Worker 关闭
            await asyncio.shield(self._publish(TaskResult.cancelled(task_id, SHUTDOWN_MESSAGE)))
            raise

        self.log_debug(f"收到任务: {task_id} [{request.agent_type}]", trace_id=task_id)
        task = asyncio.create_task(self._run_task(request), name=f"agentbus-task-{task_id}")
        self._tasks[task_id] = task

    async def _handle_invalid(self, raw: str, error: ProtocolError) -> None:
        """无法解析的任务请求：能找到 taskId 就回一个 failed 结果"""
        self._malformed += 1
        task_id = peek_task_id(raw)
        if task_id is None:
            self.log_error(f"丢弃无法解析且没有 taskId 的任务请求: {error}")
            return
        await self._publish(TaskResult.failed(task_id, MALFORMED_MESSAGE))

    async def _run_task(self, request: TaskRequest) -> None:
        try:
            with trace_context(trace_id=request.task_id, layer=Layer.WORKER, component=self.__class__.__name__):
                result = await self._execute(request)
                # 发布不受取消影响，保证终态结果送出
                await asyncio.shield(self._publish(result))
        finally:
            self._tasks.pop(request.task_id, None)
            self._semaphore.release()

    async def _execute(self, request: TaskRequest) -> TaskResult:
        """路由并执行，任何情况下都返回终态结果"""
        task_id = request.task_id
        definition = self._registry.get(request.agent_type)
        if definition is None:
            self.log_warning(f"未知的 agent_type: {request.agent_type}")
            return TaskResult.failed(task_id, unknown_agent_type_message(request.agent_type))

        context = ExecutionContext(
            task_id=task_id,
            agent_type=definition.agent_type,
            broker=self._broker,
            loop=asyncio.get_running_loop(),
        )
        token = context.activate()
        self.log_info(f"开始执行: {definition.agent_type}")
        # 执行器单独成为一个任务：只有它在截止时间内没有结束才算超时，
        # 执行器自己抛出的 TimeoutError 按普通异常处理
        execution = asyncio.create_task(definition.run(request.prompt, context))
        try:
            done, _ = await asyncio.wait({execution}, timeout=self._task_timeout)
        except asyncio.CancelledError:
            await _cancel_and_wait(execution)
            self.log_warning("执行被取消: Worker 正在关闭")
            return TaskResult.cancelled(task_id, SHUTDOWN_MESSAGE)
        finally:
            ExecutionContext.deactivate(token)

        if not done:
            await _cancel_and_wait(execution)
            self.log_warning(f"执行超时 ({self._task_timeout:g}s)")
            return TaskResult.cancelled(task_id, timeout_message(self._task_timeout))

        if execution.cancelled():
            self.log_warning("执行器自行取消")
            return TaskResult.cancelled(task_id)
        error = execution.exception()
        if error is not None:
            self.log_error(f"执行失败: {type(error).__name__}: {error}")
            return TaskResult.failed(task_id, str(error) or type(error).__name__)
        data = execution.result()

        try:
            json.dumps(data)
        except (TypeError, ValueError) as e:
            self.log_error(f"执行结果无法序列化为 JSON: {e}")
            return TaskResult.failed(task_id, f"result is not JSON serializable: {e}")
        return TaskResult.completed(task_id, data)

    async def _publish(self, result: TaskResult) -> bool:
        """
        发布终态结果，同一个 task_id 只允许发布一次

        Returns:
            是否实际发布
        """
        task_id = result.task_id
        if task_id in self._published:
            self._duplicates += 1
            self.log_error(f"拒绝重复发布结果: {task_id} ({result.status.value})", trace_id=task_id)
            return False
        self._remember_published(task_id)

        try:
            await self._broker.publish_result(result)
        except TransportError as e:
            self._publish_failures += 1
            self.log_error(f"结果发布失败: {e}", trace_id=task_id)
            return False

        if result.status == TaskStatus.COMPLETED:
            self._completed += 1
        elif result.status == TaskStatus.FAILED:
            self._failed += 1
        else:
            self._cancelled += 1
        self.log_info(f"结果已发布: {result.status.value}", trace_id=task_id)
        return True

    def _remember_published(self, task_id: str) -> None:
        self._published[task_id] = None
        while len(self._published) > self._published_history_size:
            self._published.popitem(last=False)

    def has_published(self, task_id: str) -> bool:
        """是否已为该任务发布过终态结果（仅限最近记录范围内）"""
        return task_id in self._published

    def get_stats(self) -> Dict[str, Any]:
        """获取统计信息"""
        return {
            "running": self._running,
            "received": self._received,
            "in_flight": len(self._tasks),
            "completed": self._completed,
            "failed": self._failed,
            "cancelled": self._cancelled,
            "malformed": self._malformed,
            "duplicates": self._duplicates,
            "publish_failures": self._publish_failures,
            "max_concurrent": self._max_concurrent,
            "task_timeout": self._task_timeout,
            "agent_types": self._registry.list_agent_types(),
        }


def create_worker_dispatcher(
    broker: TaskBroker,
    registry: Optional[ExecutorRegistry] = None,
    **kwargs: Any,
) -> WorkerDispatcher:
    """创建 Worker 调度器，未提供注册表时使用只含内置执行器的注册表"""
    if registry is None:
        from agentbus.agent.worker.builtin import create_builtin_registry
        registry = create_builtin_registry()
    return WorkerDispatcher(broker, registry, **kwargs)
