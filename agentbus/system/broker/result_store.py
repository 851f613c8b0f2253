"""
结果存储

按 task_id 存放溢出的大结果数据，带过期时间。
发布-订阅通道本身不持久化，且单条消息有大小限制，
大结果先写入这里，通道里只传一个引用。
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from agentbus.system.broker.protocol import TransportError
from agentbus.system.broker.transport import create_redis_client
from agentbus.system.services.logger import StoreLoggerMixin

STORAGE_KEY_PREFIX = "agents:results:data:"
DEFAULT_RESULT_TTL = 24 * 3600.0  # 24 小时


def reference_for(task_id: str) -> str:
    """任务结果在存储中的键，同时作为通道里传递的引用"""
    if not task_id:
        raise ValueError("task_id 不能为空")
    return f"{STORAGE_KEY_PREFIX}{task_id}"


class ResultStore(ABC):
    """
    结果存储抽象

    get() 返回 None 表示 NotFound：过期或从未写入，属于正常情况。
    """

    @abstractmethod
    async def put(self, task_id: str, payload: str, ttl: float = DEFAULT_RESULT_TTL) -> str:
        """
        写入结果数据

        Args:
            task_id: 任务ID
            payload: JSON 文本
            ttl: 过期时间（秒）

        Returns:
            引用（存储键）
        """

    @abstractmethod
    async def get(self, reference: str) -> Optional[str]:
        """按引用读取，未找到返回 None"""

    @abstractmethod
    async def delete(self, reference: str) -> bool:
        """删除，返回是否存在并被删除"""

    async def close(self) -> None:
        """释放资源"""


@dataclass
class _StoredPayload:
    payload: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class InMemoryResultStore(StoreLoggerMixin, ResultStore):
    """进程内结果存储，过期条目在访问时惰性清理"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            clock: 时钟函数（秒），测试时可注入
        """
        self._clock = clock
        self._entries: Dict[str, _StoredPayload] = {}
        self._lock = asyncio.Lock()

    async def put(self, task_id: str, payload: str, ttl: float = DEFAULT_RESULT_TTL) -> str:
        if ttl <= 0:
            raise ValueError("ttl 必须大于 0")
        reference = reference_for(task_id)
        async with self._lock:
            self._purge_expired()
            self._entries[reference] = _StoredPayload(payload, self._clock() + ttl)
        self.log_debug(f"结果已写入: {reference} ({len(payload)} 字符, ttl={ttl}s)", trace_id=task_id)
        return reference

    async def get(self, reference: str) -> Optional[str]:
        async with self._lock:
            entry = self._entries.get(reference)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._entries[reference]
                return None
            return entry.payload

    async def delete(self, reference: str) -> bool:
        async with self._lock:
            return self._entries.pop(reference, None) is not None

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            self.logger.debug(f"清理了 {len(expired)} 个过期结果")

    def __len__(self) -> int:
        return len(self._entries)


class RedisResultStore(StoreLoggerMixin, ResultStore):
    """基于 Redis 字符串键的结果存储（SET EX / GET / DEL）"""

    def __init__(
        self,
        connection_string: Optional[str] = None,
        client: Optional[aioredis.Redis] = None,
    ):
        """
        Args:
            connection_string: 连接串
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

    async def put(self, task_id: str, payload: str, ttl: float = DEFAULT_RESULT_TTL) -> str:
        if ttl <= 0:
            raise ValueError("ttl 必须大于 0")
        reference = reference_for(task_id)
        try:
            # 毫秒精度，至少 1ms
            await self._client.set(reference, payload, px=max(1, int(ttl * 1000)))
        except (RedisError, OSError) as e:
            raise TransportError(f"写入结果失败 [{reference}]: {e}") from e
        self.log_debug(f"结果已写入: {reference} ({len(payload)} 字符, ttl={ttl}s)", trace_id=task_id)
        return reference

    async def get(self, reference: str) -> Optional[str]:
        if not reference:
            raise ValueError("reference 不能为空")
        try:
            value = await self._client.get(reference)
        except (RedisError, OSError) as e:
            raise TransportError(f"读取结果失败 [{reference}]: {e}") from e
        return value or None

    async def delete(self, reference: str) -> bool:
        if not reference:
            raise ValueError("reference 不能为空")
        try:
            removed = await self._client.delete(reference)
        except (RedisError, OSError) as e:
            raise TransportError(f"删除结果失败 [{reference}]: {e}") from e
        return removed > 0

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
