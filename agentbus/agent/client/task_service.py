"""
任务服务（提交端）

提交任务、维护 task_id -> Future 的关联表，并提供非阻塞的结果等待。

关联表：
- 待完成: task_id -> PendingTask（Future + 结果订阅）
- 已完成: task_id -> TaskResult（有界，超出上限淘汰最早的结果，也可 forget() 主动移除）

提交时先建立结果订阅，确认生效后才发布请求，
因此不会因为 Worker 过快完成而错过结果。
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from agentbus.system.broker.protocol import TaskRequest, TaskResult, TransportError
from agentbus.system.broker.task_broker import ProgressCallback, TaskBroker
from agentbus.system.services.logger import ClientLoggerMixin

RESEARCH_AGENT_TYPE = "research"
DEFAULT_WAIT_TIMEOUT = 300.0
DEFAULT_COMPLETED_HISTORY = 10000


@dataclass
class PendingTask:
    """等待结果的任务"""
    request: TaskRequest
    future: asyncio.Future
    started: asyncio.Event = field(default_factory=asyncio.Event)
    listener: Optional[asyncio.Task] = None
    created_at: float = field(default_factory=time.time)

    @property
    def task_id(self) -> str:
        return self.request.task_id


class TaskService(ClientLoggerMixin):
    """
    任务服务

    所有关联表只在事件循环线程内访问。
    本地等待超时或放弃等待都不会影响远端正在执行的任务。
    """

    def __init__(
        self,
        broker: TaskBroker,
        default_wait_timeout: float = DEFAULT_WAIT_TIMEOUT,
        completed_history_size: int = DEFAULT_COMPLETED_HISTORY,
    ):
        """
        Args:
            broker: 任务 Broker
            default_wait_timeout: wait_for_result 未指定超时时的默认值（秒）
            completed_history_size: 已完成表保留的结果数量上限，超出时淘汰最早的结果
        """
        if completed_history_size < 1:
            raise ValueError("completed_history_size 必须大于等于 1")
        self._broker = broker
        self._default_wait_timeout = default_wait_timeout
        self._pending: Dict[str, PendingTask] = {}
        self._completed: OrderedDict[str, TaskResult] = OrderedDict()
        self._completed_history_size = completed_history_size
        self._disposed = False

    @property
    def broker(self) -> TaskBroker:
        return self._broker

    @property
    def has_pending_tasks(self) -> bool:
        return bool(self._pending)

    @property
    def pending_task_count(self) -> int:
        return len(self._pending)

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def _ensure_not_disposed(self) -> None:
        if self._disposed:
            raise RuntimeError("TaskService 已释放")

    # ============== 提交 ==============

    async def submit_task(
        self,
        agent_type: str,
        prompt: str,
        output_path: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> str:
        """
        提交任务（不等待执行）

        Args:
            agent_type: Agent 类型
            prompt: 任务描述
            output_path: 调用方希望的落盘位置，原样透传
            task_id: 指定任务ID（默认随机生成），便于先订阅进度再提交

        Returns:
            task_id

        Raises:
            TransportError: 无法订阅结果或发布请求，此时不会留下待完成记录
        """
        self._ensure_not_disposed()
        if not agent_type or not agent_type.strip():
            raise ValueError("agent_type 不能为空")

        if task_id is not None and (task_id in self._pending or task_id in self._completed):
            raise ValueError(f"任务ID已存在: {task_id}")

        request = TaskRequest.create(agent_type, prompt, output_path=output_path, task_id=task_id)
        task_id = request.task_id
        pending = PendingTask(request=request, future=asyncio.get_running_loop().create_future())
        self._pending[task_id] = pending

        pending.listener = asyncio.create_task(
            self._listen(pending),
            name=f"agentbus-result-{task_id}",
        )
        pending.listener.add_done_callback(lambda task: self._on_listener_done(pending, task))

        waiter = asyncio.create_task(pending.started.wait())
        await asyncio.wait({pending.listener, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if not pending.started.is_set():
            waiter.cancel()
            self._pending.pop(task_id, None)
            error = None if pending.listener.cancelled() else pending.listener.exception()
            self.log_error(f"结果订阅失败: {error}", trace_id=task_id)
            raise error if error is not None else TransportError(f"结果订阅意外结束: {task_id}")

        try:
            await self._broker.submit(request)
        except Exception as e:
            self.log_error(f"任务提交失败: {e}", trace_id=task_id)
            self._discard(task_id)
            raise

        self.log_info(f"任务已提交: [{agent_type}] {_preview(prompt)}", trace_id=task_id)
        return task_id

    async def submit_research_task(
        self,
        prompt: str,
        output_path: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> str:
        """提交 research 类型任务"""
        return await self.submit_task(RESEARCH_AGENT_TYPE, prompt, output_path=output_path, task_id=task_id)

    async def _listen(self, pending: PendingTask) -> None:
        result = await self._broker.subscribe_to_result(pending.task_id, started=pending.started)
        if result is not None:
            self._resolve(result)

    def _on_listener_done(self, pending: PendingTask, task: asyncio.Task) -> None:
        """结果订阅结束；订阅建立前的失败由 submit_task 处理"""
        if task.cancelled() or not pending.started.is_set():
            return
        error = task.exception()
        if self._pending.get(pending.task_id) is not pending:
            return
        # 订阅已结束却没有结果：不再可能收到通知
        if error is not None:
            self.log_error(f"结果订阅异常结束: {error}", trace_id=pending.task_id)
        else:
            self.log_warning("结果订阅已关闭，未收到结果", trace_id=pending.task_id)
        self._pending.pop(pending.task_id, None)
        if not pending.future.done():
            pending.future.cancel()

    def _resolve(self, result: TaskResult) -> None:
        """
        记录结果并唤醒等待方（幂等）

        已释放的服务忽略迟到的结果。
        """
        pending = self._pending.pop(result.task_id, None)
        if self._disposed:
            self.log_debug(f"服务已释放，忽略迟到的结果: {result.task_id}", trace_id=result.task_id)
            return
        self._completed[result.task_id] = result
        while len(self._completed) > self._completed_history_size:
            evicted, _ = self._completed.popitem(last=False)
            self.log_debug(f"已完成表已满，淘汰结果: {evicted}", trace_id=evicted)
        if pending is not None and not pending.future.done():
            pending.future.set_result(result)
        self.log_info(f"收到任务结果: {result.status.value}", trace_id=result.task_id)

    def _discard(self, task_id: str) -> None:
        pending = self._pending.pop(task_id, None)
        if pending is None:
            return
        if pending.listener is not None and not pending.listener.done():
            pending.listener.cancel()
        if not pending.future.done():
            pending.future.cancel()

    # ============== 结果 ==============

    async def wait_for_result(
        self,
        task_id: str,
        timeout: Optional[float] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Optional[TaskResult]:
        """
        等待任务结果

        Args:
            task_id: 任务ID
            timeout: 本地等待超时（秒），默认使用 default_wait_timeout。
                与 Worker 的执行超时无关，超时后任务仍在继续执行
            cancel_event: 置位后放弃等待

        Returns:
            终态结果；超时、放弃等待、服务释放或未知 task_id 时返回 None
        """
        self._ensure_not_disposed()
        completed = self._completed.get(task_id)
        if completed is not None:
            return completed

        pending = self._pending.get(task_id)
        if pending is None:
            self.log_debug(f"未知的任务: {task_id}", trace_id=task_id)
            return None

        timeout = self._default_wait_timeout if timeout is None else timeout
        shielded = asyncio.shield(pending.future)
        waiters = {shielded}
        if cancel_event is not None:
            waiters.add(asyncio.create_task(cancel_event.wait()))
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        if shielded.done() and not shielded.cancelled():
            return shielded.result()
        if pending.future.cancelled():
            self.log_debug("等待结束: 待完成记录已被取消", trace_id=task_id)
        elif cancel_event is not None and cancel_event.is_set():
            self.log_debug("调用方放弃等待", trace_id=task_id)
        else:
            self.log_info(f"本地等待超时 ({timeout:g}s)，任务仍在执行", trace_id=task_id)
        return None

    def get_result(self, task_id: str) -> Optional[TaskResult]:
        """只查已完成表，不等待"""
        self._ensure_not_disposed()
        return self._completed.get(task_id)

    def get_pending_task_ids(self) -> List[str]:
        """待完成任务ID快照"""
        self._ensure_not_disposed()
        return list(self._pending)

    def get_completed_tasks(self) -> Dict[str, TaskResult]:
        """已完成任务快照"""
        self._ensure_not_disposed()
        return dict(self._completed)

    def forget(self, task_id: str) -> bool:
        """
        从已完成表中移除结果

        Returns:
            是否存在并已移除
        """
        self._ensure_not_disposed()
        return self._completed.pop(task_id, None) is not None

    def get_pending_request(self, task_id: str) -> Optional[TaskRequest]:
        """待完成任务的原始请求"""
        pending = self._pending.get(task_id)
        return pending.request if pending is not None else None

    async def subscribe_to_progress(
        self,
        task_id: str,
        on_progress: ProgressCallback,
        *,
        started: Optional[asyncio.Event] = None,
    ) -> None:
        """订阅任务进度，直到被取消（尽力而为）"""
        self._ensure_not_disposed()
        await self._broker.subscribe_to_progress(task_id, on_progress, started=started)

    # ============== 释放 ==============

    async def dispose(self) -> None:
        """
        释放服务

        取消所有结果订阅，待完成记录按取消处理（等待方得到 None）。
        远端任务不受影响。
        """
        if self._disposed:
            return
        self._disposed = True

        pending = list(self._pending.values())
        self._pending.clear()
        listeners = []
        for item in pending:
            if item.listener is not None and not item.listener.done():
                item.listener.cancel()
                listeners.append(item.listener)
            if not item.future.done():
                item.future.cancel()
        if listeners:
            await asyncio.gather(*listeners, return_exceptions=True)
        self.log_info(f"TaskService 已释放 (取消 {len(pending)} 个待完成任务)")

    async def __aenter__(self) -> TaskService:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.dispose()


def _preview(text: str, limit: int = 60) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def create_task_service(broker: TaskBroker, **kwargs) -> TaskService:
    """创建任务服务"""
    return TaskService(broker, **kwargs)
