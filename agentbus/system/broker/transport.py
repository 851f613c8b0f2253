"""
任务通道传输层

发布-订阅传输抽象，用于：
- 任务下发（agents:tasks）
- 结果/进度回传（agents:results:{id} / agents:progress:{id}）

语义是"发后即忘"：发布时没有订阅者的消息直接丢弃，不做持久化。

提供两种实现：
- InMemoryTransport: 进程内实现，用于测试和单进程部署
- RedisTransport: 基于 Redis Pub/Sub 的跨进程实现
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import AsyncIterator, Dict, Optional, Set

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from agentbus.system.broker.protocol import TransportError
from agentbus.system.services.logger import TransportLoggerMixin, get_logger

logger = get_logger(__name__)

DEFAULT_QUEUE_MAXSIZE = 1000  # 每个订阅的本地缓冲上限
SUBSCRIBE_CONFIRM_TIMEOUT = 5.0


def normalize_redis_url(connection_string: str) -> str:
    """
    规范化 Redis 连接串

    兼容 "host:port" 简写，统一转成 redis:// URL。
    """
    if not connection_string or not connection_string.strip():
        raise ValueError("connection_string 不能为空")
    connection_string = connection_string.strip()
    if "://" in connection_string:
        return connection_string
    return f"redis://{connection_string}"


def create_redis_client(connection_string: str) -> aioredis.Redis:
    """按连接串创建 redis 客户端（返回字符串而非字节）"""
    return aioredis.from_url(normalize_redis_url(connection_string), decode_responses=True)


class Subscription(ABC):
    """
    单个话题的订阅

    通过 get() 或异步迭代读取消息，使用完毕后必须 close()。
    """

    def __init__(self, topic: str):
        self.topic = topic

    @abstractmethod
    async def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        读取下一条消息

        Args:
            timeout: 超时时间，None表示永久等待

        Returns:
            消息内容，超时返回 None
        """

    @abstractmethod
    async def close(self) -> None:
        """取消订阅并释放资源"""

    async def __aenter__(self) -> Subscription:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        while True:
            message = await self.get()
            if message is None:
                return
            yield message


class TaskTransport(ABC):
    """发布-订阅传输抽象"""

    @abstractmethod
    async def publish(self, topic: str, payload: str) -> int:
        """
        发布消息

        Returns:
            收到该消息的订阅者数量

        Raises:
            TransportError: 连接不可用
        """

    @abstractmethod
    async def subscribe(self, topic: str) -> Subscription:
        """
        订阅话题

        返回时订阅已经生效，此后发布的消息都会送达。

        Raises:
            TransportError: 连接不可用
        """

    async def initialize(self) -> None:
        """建立连接"""

    async def close(self) -> None:
        """关闭连接"""


# ============== 进程内实现 ==============

class InMemorySubscription(Subscription):
    """进程内订阅：一个有界 asyncio.Queue"""

    _CLOSED = object()

    def __init__(self, transport: InMemoryTransport, topic: str, maxsize: int):
        super().__init__(topic)
        self._transport = transport
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def get(self, timeout: Optional[float] = None) -> Optional[str]:
        if self.closed and self.queue.empty():
            return None
        try:
            if timeout is not None:
                item = await asyncio.wait_for(self.queue.get(), timeout=timeout)
            else:
                item = await self.queue.get()
        except asyncio.TimeoutError:
            return None
        if item is self._CLOSED:
            return None
        return item

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._transport._remove(self)
        # 唤醒正在等待的读取方
        try:
            self.queue.put_nowait(self._CLOSED)
        except asyncio.QueueFull:
            pass  # 队列非空时读取方不会阻塞


class InMemoryTransport(TransportLoggerMixin, TaskTransport):
    """
    进程内发布-订阅

    话题 -> 订阅集合；发布时复制到每个订阅的有界队列。
    """

    def __init__(
        self,
        queue_maxsize: int = DEFAULT_QUEUE_MAXSIZE,
    ):
        """
        初始化进程内传输

        Args:
            queue_maxsize: 每个订阅的队列最大大小，防止内存溢出
        """
        self._queue_maxsize = queue_maxsize
        self._subscriptions: Dict[str, Set[InMemorySubscription]] = defaultdict(set)
        self._closed = False

    async def close(self) -> None:
        self._closed = True
        for subscribers in list(self._subscriptions.values()):
            for subscription in list(subscribers):
                await subscription.close()
        self._subscriptions.clear()

    def _ensure_open(self) -> None:
        if self._closed:
            raise TransportError("传输已关闭")

    async def publish(self, topic: str, payload: str) -> int:
        self._ensure_open()
        subscribers = list(self._subscriptions.get(topic, ()))
        delivered = 0

        # 与 Redis 发布-订阅一致：发布方从不等待慢订阅者，缓冲满时丢弃
        for subscription in subscribers:
            try:
                subscription.queue.put_nowait(payload)
                delivered += 1
            except asyncio.QueueFull:
                self.logger.error(
                    f"订阅者队列已满，消息丢弃: {topic} (size={self._queue_maxsize})"
                )

        self.logger.debug(f"消息发布: [{topic}] ({delivered} 订阅者)")
        return delivered

    async def subscribe(self, topic: str) -> InMemorySubscription:
        self._ensure_open()
        subscription = InMemorySubscription(self, topic, self._queue_maxsize)
        self._subscriptions[topic].add(subscription)
        self.logger.debug(f"订阅话题: {topic}")
        return subscription

    def _remove(self, subscription: InMemorySubscription) -> None:
        subscribers = self._subscriptions.get(subscription.topic)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            self._subscriptions.pop(subscription.topic, None)

    def subscriber_count(self, topic: str) -> int:
        """获取话题当前订阅者数量"""
        return len(self._subscriptions.get(topic, ()))


# ============== Redis 实现 ==============

class RedisSubscription(Subscription):
    """基于 redis PubSub 的订阅，每个订阅独占一个连接"""

    def __init__(self, pubsub, topic: str):
        super().__init__(topic)
        self._pubsub = pubsub
        self._closed = False

    async def open(self) -> None:
        """发送 SUBSCRIBE 并等待服务端确认"""
        await self._pubsub.subscribe(self.topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + SUBSCRIBE_CONFIRM_TIMEOUT
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TransportError(f"订阅确认超时: {self.topic}")
            message = await self._pubsub.get_message(timeout=remaining)
            if message and message.get("type") == "subscribe":
                return

    async def get(self, timeout: Optional[float] = None) -> Optional[str]:
        if self._closed:
            return None
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            wait = 1.0 if deadline is None else max(0.0, deadline - loop.time())
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=wait,
                )
            except (RedisError, OSError) as e:
                raise TransportError(f"读取订阅消息失败: {self.topic}: {e}") from e
            if message is not None and message.get("type") == "message":
                return message.get("data")
            if deadline is not None and loop.time() >= deadline:
                return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self.topic)
        except (RedisError, OSError) as e:
            logger.debug(f"取消订阅失败（连接可能已断开）: {self.topic}: {e}")
        await self._pubsub.aclose()


class RedisTransport(TransportLoggerMixin, TaskTransport):
    """
    Redis Pub/Sub 传输

    重连与退避策略由 redis 客户端自身配置决定，本层不做重试。
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        client: Optional[aioredis.Redis] = None,
    ):
        """
        初始化 Redis 传输

        Args:
            connection_string: 连接串，例如 "localhost:6379" 或 "redis://host:6379/0"
            client: 已创建的客户端（优先使用，由调用方负责关闭）
        """
        if client is None:
            if connection_string is None or not connection_string.strip():
                raise ValueError("connection_string 不能为空")
            client = create_redis_client(connection_string)
            self._owns_client = True
        else:
            self._owns_client = False
        self._client = client

    @property
    def client(self) -> aioredis.Redis:
        return self._client

    async def initialize(self) -> None:
        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            raise TransportError(f"无法连接 Redis: {e}") from e
        self.logger.info("Redis 传输已连接")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def publish(self, topic: str, payload: str) -> int:
        try:
            receivers = await self._client.publish(topic, payload)
        except (RedisError, OSError) as e:
            raise TransportError(f"发布失败 [{topic}]: {e}") from e
        self.logger.debug(f"消息发布: [{topic}] ({receivers} 订阅者)")
        return receivers

    async def subscribe(self, topic: str) -> RedisSubscription:
        subscription = RedisSubscription(self._client.pubsub(), topic)
        try:
            await subscription.open()
        except (RedisError, OSError) as e:
            await subscription.close()
            raise TransportError(f"订阅失败 [{topic}]: {e}") from e
        except TransportError:
            await subscription.close()
            raise
        self.logger.debug(f"订阅话题: {topic}")
        return subscription
