"""
任务 Broker

提交端与 Worker 共用的传输 + 溢出存储抽象：
- submit / subscribe_to_tasks: 任务下发
- publish_result / subscribe_to_result: 结果回传（单次）
- publish_progress / subscribe_to_progress: 进度回传（多次，尽力而为）

大结果的溢出处理对调用方透明：发布时超过阈值的 data 写入 ResultStore，
通道中只传 {"$resultRef": "<存储键>"}，订阅端收到后自动取回。
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
from typing import Any, Awaitable, Callable, Optional, Union

from agentbus.system.broker.protocol import (
    TASKS_TOPIC,
    ProtocolError,
    TaskProgress,
    TaskRequest,
    TaskResult,
    TransportError,
    progress_topic,
    result_topic,
)
from agentbus.system.broker.result_store import (
    DEFAULT_RESULT_TTL,
    ResultStore,
    reference_for,
)
from agentbus.system.broker.transport import TaskTransport
from agentbus.system.services.logger import BrokerLoggerMixin

OVERFLOW_REF_KEY = "$resultRef"
DEFAULT_OVERFLOW_THRESHOLD = 64 * 1024  # 字节

# 回调类型：普通函数或协程函数均可
ResultCallback = Callable[[TaskResult], Union[None, Awaitable[None]]]
ProgressCallback = Callable[[TaskProgress], Union[None, Awaitable[None]]]
TaskHandler = Callable[[TaskRequest], Union[None, Awaitable[None]]]
InvalidTaskHandler = Callable[[str, ProtocolError], Union[None, Awaitable[None]]]


def is_overflow_reference(data: Any) -> bool:
    """data 是否是溢出引用"""
    return (
        isinstance(data, dict)
        and len(data) == 1
        and isinstance(data.get(OVERFLOW_REF_KEY), str)
    )


class TaskBroker(BrokerLoggerMixin):
    """
    任务 Broker

    不负责保证单次发布，重复发布的拦截在 WorkerDispatcher 中完成。
    """

    def __init__(
        self,
        transport: TaskTransport,
        result_store: ResultStore,
        overflow_threshold_bytes: int = DEFAULT_OVERFLOW_THRESHOLD,
        overflow_ttl: float = DEFAULT_RESULT_TTL,
    ):
        """
        初始化 Broker

        Args:
            transport: 发布-订阅传输
            result_store: 溢出结果存储
            overflow_threshold_bytes: data 序列化后超过该字节数即溢出存储
            overflow_ttl: 溢出数据的过期时间（秒）
        """
        if overflow_threshold_bytes <= 0:
            raise ValueError("overflow_threshold_bytes 必须大于 0")
        if overflow_ttl <= 0:
            raise ValueError("overflow_ttl 必须大于 0")
        self._transport = transport
        self._store = result_store
        self._overflow_threshold = overflow_threshold_bytes
        self._overflow_ttl = overflow_ttl

    @property
    def transport(self) -> TaskTransport:
        return self._transport

    @property
    def result_store(self) -> ResultStore:
        return self._store

    @property
    def overflow_threshold_bytes(self) -> int:
        return self._overflow_threshold

    # ============== 任务下发 ==============

    async def submit(self, request: TaskRequest) -> None:
        """
        发布任务请求（不等待 Worker 领取）

        Raises:
            TransportError: 传输不可用
        """
        receivers = await self._transport.publish(TASKS_TOPIC, request.to_json())
        if receivers == 0:
            self.log_warning(f"任务已发布但当前没有 Worker 订阅: {request.task_id}", trace_id=request.task_id)
        else:
            self.log_debug(f"任务已提交: {request.task_id} [{request.agent_type}]", trace_id=request.task_id)

    async def subscribe_to_tasks(
        self,
        handler: TaskHandler,
        *,
        on_invalid: Optional[InvalidTaskHandler] = None,
        started: Optional[asyncio.Event] = None,
    ) -> None:
        """
        持续消费任务话题，直到被取消

        handler 返回（或其协程完成）之后才读取下一条消息，
        因此 handler 内的等待会让后续任务留在订阅缓冲中排队。

        Args:
            handler: 任务处理函数
            on_invalid: 无法解析的消息的处理函数（原始文本, 错误）
            started: 订阅生效后置位
        """
        subscription = await self._transport.subscribe(TASKS_TOPIC)
        if started is not None:
            started.set()
        self.logger.info(f"开始消费任务话题: {TASKS_TOPIC}")
        try:
            async for raw in subscription:
                try:
                    request = TaskRequest.from_json(raw)
                except ProtocolError as e:
                    self.logger.error(f"无法解析任务请求: {e}")
                    if on_invalid is not None:
                        await self._invoke(on_invalid, raw, e)
                    continue
                await self._invoke(handler, request)
        finally:
            await subscription.close()

    # ============== 结果 ==============

    async def publish_result(self, result: TaskResult) -> TaskResult:
        """
        发布终态结果

        data 过大时先写入 ResultStore，再发布只含引用的结果。

        Returns:
            实际发布到通道上的结果（可能是引用形式）

        Raises:
            TransportError: 传输或存储不可用
        """
        published = result
        if result.data is not None:
            serialized = json.dumps(result.data, ensure_ascii=False)
            size = len(serialized.encode("utf-8"))
            # 形如引用的内联数据也走存储，订阅端才能无歧义地还原
            if size > self._overflow_threshold or is_overflow_reference(result.data):
                reference = await self._store.put(result.task_id, serialized, self._overflow_ttl)
                published = dataclasses.replace(result, data={OVERFLOW_REF_KEY: reference})
                self.log_info(
                    f"结果数据已转存 ({size} 字节, 阈值 {self._overflow_threshold}): {reference}",
                    trace_id=result.task_id,
                )

        receivers = await self._transport.publish(result_topic(result.task_id), published.to_json())
        self.log_debug(
            f"结果已发布: {result.task_id} ({result.status.value}, {receivers} 订阅者)",
            trace_id=result.task_id,
        )
        return published

    async def subscribe_to_result(
        self,
        task_id: str,
        on_result: Optional[ResultCallback] = None,
        *,
        started: Optional[asyncio.Event] = None,
    ) -> Optional[TaskResult]:
        """
        等待任务结果（单次）

        收到第一条结果后调用 on_result 并取消订阅。
        取消外层 asyncio 任务即可中止订阅，不影响其它订阅。

        Args:
            task_id: 任务ID
            on_result: 结果回调
            started: 订阅生效后置位，调用方可据此在订阅之后再提交任务

        Returns:
            结果；订阅被关闭而未收到结果时返回 None
        """
        if not task_id:
            raise ValueError("task_id 不能为空")

        subscription = await self._transport.subscribe(result_topic(task_id))
        if started is not None:
            started.set()
        try:
            async for raw in subscription:
                try:
                    result = TaskResult.from_json(raw)
                except ProtocolError as e:
                    self.log_error(f"无法解析任务结果: {e}", trace_id=task_id)
                    continue
                result = await self._resolve_overflow(result)
                if on_result is not None:
                    await self._invoke(on_result, result)
                return result
            return None
        finally:
            await subscription.close()

    async def retrieve_result_data(self, task_id: str) -> Any:
        """
        直接从 ResultStore 读取溢出的结果数据

        用于错过通知、改为轮询的提交端。仅溢出过的结果可以取回。

        Returns:
            结果数据；未找到（过期或从未溢出）返回 None
        """
        payload = await self._store.get(reference_for(task_id))
        if payload is None:
            return None
        return json.loads(payload)

    async def _resolve_overflow(self, result: TaskResult) -> TaskResult:
        """把引用形式的 data 替换为实际数据"""
        if not is_overflow_reference(result.data):
            return result
        reference = result.data[OVERFLOW_REF_KEY]
        if reference != reference_for(result.task_id):
            self.log_warning(f"引用不属于该任务，按内联数据处理: {reference}", trace_id=result.task_id)
            return result
        payload = await self._store.get(reference)
        if payload is None:
            self.log_warning(f"溢出结果已过期或不存在: {reference}", trace_id=result.task_id)
            return dataclasses.replace(result, data=None)
        try:
            data = json.loads(payload)
        except ValueError:
            self.log_error(f"溢出结果不是合法的 JSON: {reference}", trace_id=result.task_id)
            return dataclasses.replace(result, data=None)
        return dataclasses.replace(result, data=data)

    # ============== 进度 ==============

    async def publish_progress(self, progress: TaskProgress) -> bool:
        """
        发布进度（尽力而为）

        传输错误只记录日志，不向执行方抛出。

        Returns:
            是否发布成功
        """
        try:
            await self._transport.publish(progress_topic(progress.task_id), progress.to_json())
        except TransportError as e:
            self.log_warning(f"进度发布失败: {e}", trace_id=progress.task_id)
            return False
        return True

    async def subscribe_to_progress(
        self,
        task_id: str,
        on_progress: ProgressCallback,
        *,
        started: Optional[asyncio.Event] = None,
    ) -> None:
        """
        持续接收任务进度，直到被取消

        不保证送达，也不保证顺序。
        """
        if not task_id:
            raise ValueError("task_id 不能为空")

        subscription = await self._transport.subscribe(progress_topic(task_id))
        if started is not None:
            started.set()
        try:
            async for raw in subscription:
                try:
                    progress = TaskProgress.from_json(raw)
                except ProtocolError as e:
                    self.log_warning(f"无法解析任务进度: {e}", trace_id=task_id)
                    continue
                await self._invoke(on_progress, progress)
        finally:
            await subscription.close()

    async def close(self) -> None:
        """关闭传输与存储"""
        await self._transport.close()
        await self._store.close()

    async def _invoke(self, callback: Callable[..., Any], *args: Any) -> None:
        """调用回调；回调异常只记录，不中断订阅"""
        try:
            outcome = callback(*args)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception as e:
            self.logger.warning(f"回调执行失败: {e}")
