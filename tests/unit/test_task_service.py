"""
任务服务单元测试

Worker 端用直接发布结果的方式模拟。
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from agentbus.agent.client.task_service import RESEARCH_AGENT_TYPE, TaskService
from agentbus.system.broker.protocol import (
    TASKS_TOPIC,
    TaskProgress,
    TaskRequest,
    TaskResult,
    TransportError,
    result_topic,
    utc_now,
)


async def settle():
    """让结果订阅处理完已到达的消息"""
    for _ in range(5):
        await asyncio.sleep(0)


class TestSubmit:
    """提交测试"""

    @pytest.mark.asyncio
    async def test_submit_publishes_request(self, task_service, transport):
        tasks = await transport.subscribe(TASKS_TOPIC)

        task_id = await task_service.submit_task("research", "调研", output_path="out/r.md")
        request = TaskRequest.from_json(await tasks.get(timeout=1.0))
        assert request.task_id == task_id
        assert request.agent_type == "research"
        assert request.prompt == "调研"
        assert request.output_path == "out/r.md"

    @pytest.mark.asyncio
    async def test_result_subscription_live_before_submit(self, task_service, transport):
        task_id = await task_service.submit_task("echo", "x")
        assert transport.subscriber_count(result_topic(task_id)) == 1
        assert task_service.get_pending_task_ids() == [task_id]
        assert task_service.has_pending_tasks
        assert task_service.pending_task_count == 1
        assert task_service.get_pending_request(task_id).prompt == "x"

    @pytest.mark.asyncio
    async def test_submit_research_task(self, task_service, transport):
        tasks = await transport.subscribe(TASKS_TOPIC)
        await task_service.submit_research_task("topic")
        request = TaskRequest.from_json(await tasks.get(timeout=1.0))
        assert request.agent_type == RESEARCH_AGENT_TYPE

    @pytest.mark.asyncio
    async def test_task_ids_are_unique(self, task_service):
        ids = {await task_service.submit_task("echo", str(i)) for i in range(10)}
        assert len(ids) == 10

    @pytest.mark.asyncio
    async def test_submit_with_fixed_task_id(self, task_service, transport):
        tasks = await transport.subscribe(TASKS_TOPIC)
        assert await task_service.submit_task("research", "find X", task_id="abc123") == "abc123"
        assert TaskRequest.from_json(await tasks.get(timeout=1.0)).task_id == "abc123"
        assert task_service.get_pending_task_ids() == ["abc123"]

    @pytest.mark.asyncio
    async def test_duplicate_task_id_rejected(self, task_service):
        await task_service.submit_task("echo", "x", task_id="t1")
        with pytest.raises(ValueError):
            await task_service.submit_task("echo", "y", task_id="t1")
        assert task_service.pending_task_count == 1

    @pytest.mark.asyncio
    async def test_empty_agent_type_rejected(self, task_service):
        with pytest.raises(ValueError):
            await task_service.submit_task(" ", "x")

    @pytest.mark.asyncio
    async def test_subscribe_failure_leaves_no_pending(self, task_service, transport):
        await transport.close()
        with pytest.raises(TransportError):
            await task_service.submit_task("echo", "x")
        assert task_service.get_pending_task_ids() == []

    @pytest.mark.asyncio
    async def test_publish_failure_leaves_no_pending(self, task_service, broker, transport):
        broker.submit = AsyncMock(side_effect=TransportError("redis down"))
        with pytest.raises(TransportError):
            await task_service.submit_task("echo", "x")
        await settle()
        assert task_service.get_pending_task_ids() == []
        # 结果订阅已随之取消
        assert transport._subscriptions == {}


class TestWaitForResult:
    """等待结果测试"""

    @pytest.mark.asyncio
    async def test_result_resolves_waiter(self, task_service, broker):
        task_id = await task_service.submit_task("echo", "x")
        waiter = asyncio.create_task(task_service.wait_for_result(task_id, timeout=2.0))
        await asyncio.sleep(0)

        result = TaskResult.completed(task_id, {"text": "x"})
        await broker.publish_result(result)
        assert await asyncio.wait_for(waiter, timeout=2.0) == result
        assert task_service.get_pending_task_ids() == []
        assert task_service.get_completed_tasks() == {task_id: result}

    @pytest.mark.asyncio
    async def test_completed_result_returned_immediately(self, task_service, broker):
        task_id = await task_service.submit_task("echo", "x")
        result = TaskResult.failed(task_id, "boom")
        await broker.publish_result(result)
        await settle()

        assert task_service.get_result(task_id) == result
        assert await task_service.wait_for_result(task_id, timeout=0) == result

    @pytest.mark.asyncio
    async def test_unknown_task_returns_none(self, task_service):
        assert await task_service.wait_for_result("nope", timeout=0.1) is None
        assert task_service.get_result("nope") is None

    @pytest.mark.asyncio
    async def test_timeout_returns_none_and_keeps_pending(self, task_service, broker):
        task_id = await task_service.submit_task("echo", "x")
        assert await task_service.wait_for_result(task_id, timeout=0.05) is None
        assert task_service.get_pending_task_ids() == [task_id]

        # 任务仍可在之后完成
        result = TaskResult.completed(task_id, 1)
        await broker.publish_result(result)
        assert await task_service.wait_for_result(task_id, timeout=1.0) == result

    @pytest.mark.asyncio
    async def test_default_timeout(self, broker):
        service = TaskService(broker, default_wait_timeout=0.05)
        try:
            task_id = await service.submit_task("echo", "x")
            assert await service.wait_for_result(task_id) is None
        finally:
            await service.dispose()

    @pytest.mark.asyncio
    async def test_cancel_event_abandons_wait(self, task_service):
        task_id = await task_service.submit_task("echo", "x")
        cancel = asyncio.Event()
        waiter = asyncio.create_task(task_service.wait_for_result(task_id, timeout=5.0, cancel_event=cancel))
        await asyncio.sleep(0.01)

        cancel.set()
        assert await asyncio.wait_for(waiter, timeout=1.0) is None
        assert task_service.get_pending_task_ids() == [task_id]

    @pytest.mark.asyncio
    async def test_multiple_waiters_share_result(self, task_service, broker):
        task_id = await task_service.submit_task("echo", "x")
        waiters = [asyncio.create_task(task_service.wait_for_result(task_id, timeout=2.0)) for _ in range(3)]
        await asyncio.sleep(0)

        result = TaskResult.completed(task_id, "shared")
        await broker.publish_result(result)
        assert await asyncio.gather(*waiters) == [result, result, result]

    @pytest.mark.asyncio
    async def test_cancelling_one_waiter_keeps_others(self, task_service, broker):
        task_id = await task_service.submit_task("echo", "x")
        first = asyncio.create_task(task_service.wait_for_result(task_id, timeout=2.0))
        second = asyncio.create_task(task_service.wait_for_result(task_id, timeout=2.0))
        await asyncio.sleep(0.01)

        first.cancel()
        await asyncio.gather(first, return_exceptions=True)

        result = TaskResult.completed(task_id, 1)
        await broker.publish_result(result)
        assert await asyncio.wait_for(second, timeout=1.0) == result


class TestResolution:
    """结果关联测试"""

    @pytest.mark.asyncio
    async def test_overflow_result_resolved_transparently(self, task_service, broker):
        task_id = await task_service.submit_task("research", "big")
        big = {"report": "x" * 2000}
        await broker.publish_result(TaskResult.completed(task_id, big))

        result = await task_service.wait_for_result(task_id, timeout=1.0)
        assert result.data == big

    @pytest.mark.asyncio
    async def test_results_routed_to_own_task(self, task_service, broker):
        first = await task_service.submit_task("echo", "1")
        second = await task_service.submit_task("echo", "2")

        await broker.publish_result(TaskResult.completed(second, "two"))
        await broker.publish_result(TaskResult.completed(first, "one"))

        assert (await task_service.wait_for_result(first, timeout=1.0)).data == "one"
        assert (await task_service.wait_for_result(second, timeout=1.0)).data == "two"

    @pytest.mark.asyncio
    async def test_subscription_closed_without_result(self, task_service, transport):
        task_id = await task_service.submit_task("echo", "x")
        waiter = asyncio.create_task(task_service.wait_for_result(task_id, timeout=5.0))
        await asyncio.sleep(0)

        await transport.close()
        assert await asyncio.wait_for(waiter, timeout=1.0) is None
        assert task_service.get_pending_task_ids() == []

    @pytest.mark.asyncio
    async def test_progress_pass_through(self, task_service, broker):
        task_id = await task_service.submit_task("echo", "x")
        received = []
        started = asyncio.Event()
        listener = asyncio.create_task(
            task_service.subscribe_to_progress(task_id, received.append, started=started)
        )
        await asyncio.wait_for(started.wait(), timeout=1.0)

        await broker.publish_progress(TaskProgress(task_id, "working", utc_now()))
        await asyncio.sleep(0.05)
        listener.cancel()
        await asyncio.gather(listener, return_exceptions=True)
        assert [p.message for p in received] == ["working"]


class TestDispose:
    """释放测试"""

    @pytest.mark.asyncio
    async def test_dispose_cancels_pending(self, broker, transport):
        service = TaskService(broker)
        task_id = await service.submit_task("echo", "x")
        waiter = asyncio.create_task(service.wait_for_result(task_id, timeout=5.0))
        await asyncio.sleep(0)

        await service.dispose()
        assert await asyncio.wait_for(waiter, timeout=1.0) is None
        assert service.pending_task_count == 0
        assert transport.subscriber_count(result_topic(task_id)) == 0

    @pytest.mark.asyncio
    async def test_calls_after_dispose_raise(self, broker):
        service = TaskService(broker)
        await service.dispose()
        await service.dispose()
        assert service.is_disposed

        with pytest.raises(RuntimeError):
            await service.submit_task("echo", "x")
        with pytest.raises(RuntimeError):
            await service.wait_for_result("t1")
        with pytest.raises(RuntimeError):
            service.get_result("t1")
        with pytest.raises(RuntimeError):
            service.get_pending_task_ids()

    @pytest.mark.asyncio
    async def test_late_result_after_dispose_ignored(self, broker):
        service = TaskService(broker)
        await service.dispose()
        service._resolve(TaskResult.completed("late", 1))
        assert service._completed == {}

    @pytest.mark.asyncio
    async def test_async_context_manager(self, broker):
        async with TaskService(broker) as service:
            await service.submit_task("echo", "x")
        assert service.is_disposed


class TestCompletedTable:
    """已完成表测试"""

    @pytest.mark.asyncio
    async def test_oldest_results_evicted(self, broker):
        service = TaskService(broker, completed_history_size=2)
        try:
            for task_id in ("a", "b", "c"):
                await service.submit_task("echo", task_id, task_id=task_id)
                await broker.publish_result(TaskResult.completed(task_id, task_id))
                assert await service.wait_for_result(task_id, timeout=1.0) is not None

            assert list(service.get_completed_tasks()) == ["b", "c"]
            assert service.get_result("a") is None
        finally:
            await service.dispose()

    @pytest.mark.asyncio
    async def test_forget(self, task_service, broker):
        task_id = await task_service.submit_task("echo", "x")
        await broker.publish_result(TaskResult.completed(task_id, 1))
        await task_service.wait_for_result(task_id, timeout=1.0)

        assert task_service.forget(task_id) is True
        assert task_service.forget(task_id) is False
        assert task_service.get_result(task_id) is None

    @pytest.mark.asyncio
    async def test_invalid_history_size(self, broker):
        with pytest.raises(ValueError):
            TaskService(broker, completed_history_size=0)
