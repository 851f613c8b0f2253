"""
通信协议

定义任务提交、结果与进度三类消息的标准格式，以及话题命名。
线上格式为 JSON，键名统一使用小驼峰（taskId、agentType ...）。
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

# 话题命名（需与其他语言实现保持一致）
TASKS_TOPIC = "agents:tasks"
RESULTS_TOPIC_PREFIX = "agents:results:"
PROGRESS_TOPIC_PREFIX = "agents:progress:"


def result_topic(task_id: str) -> str:
    """任务结果话题"""
    return f"{RESULTS_TOPIC_PREFIX}{task_id}"


def progress_topic(task_id: str) -> str:
    """任务进度话题"""
    return f"{PROGRESS_TOPIC_PREFIX}{task_id}"


def new_task_id() -> str:
    """生成任务ID（128位随机数的十六进制表示）"""
    return uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AgentBusError(Exception):
    """AgentBus 异常基类"""


class TransportError(AgentBusError):
    """发布-订阅连接不可用"""


class ProtocolError(AgentBusError):
    """无法解析的消息"""


class TaskStatus(Enum):
    """任务状态"""
    PENDING = "pending"        # 仅出现在进度中
    RUNNING = "running"        # 仅出现在进度中
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """是否为终态"""
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


def _format_time(value: datetime) -> str:
    return value.isoformat()


def _parse_time(value: Any, field_name: str) -> datetime:
    if not isinstance(value, str):
        raise ProtocolError(f"字段 {field_name} 不是时间字符串")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ProtocolError(f"字段 {field_name} 时间格式错误: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"缺少字段或类型错误: {key}")
    return value


def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(f"字段 {key} 不是整数")
    return value


def _load_document(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"消息不是合法的 JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("消息必须是 JSON 对象")
    return data


def peek_task_id(text: str) -> Optional[str]:
    """
    尽力从一条消息中取出 taskId

    用于处理无法完整解析的任务请求：只要还能找到 taskId，
    就仍然可以给提交者回一个失败结果。
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        return None
    if isinstance(data, dict):
        task_id = data.get("taskId")
        if isinstance(task_id, str) and task_id:
            return task_id
    return None


@dataclass(frozen=True)
class TaskRequest:
    """任务请求"""
    task_id: str
    agent_type: str
    prompt: str
    submitted_at: datetime
    output_path: Optional[str] = None  # 调用方希望落盘的位置，核心不做处理

    @classmethod
    def create(
        cls,
        agent_type: str,
        prompt: str,
        output_path: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> TaskRequest:
        """创建新的任务请求"""
        return cls(
            task_id=task_id or new_task_id(),
            agent_type=agent_type,
            prompt=prompt,
            submitted_at=utc_now(),
            output_path=output_path,
        )

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "taskId": self.task_id,
            "agentType": self.agent_type,
            "prompt": self.prompt,
            "submittedAt": _format_time(self.submitted_at),
            "outputPath": self.output_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TaskRequest:
        """从字典创建"""
        prompt = data.get("prompt")
        if not isinstance(prompt, str):
            raise ProtocolError("缺少字段或类型错误: prompt")
        output_path = data.get("outputPath")
        if output_path is not None and not isinstance(output_path, str):
            raise ProtocolError("字段 outputPath 必须是字符串")
        return cls(
            task_id=_require_str(data, "taskId"),
            agent_type=_require_str(data, "agentType"),
            prompt=prompt,
            submitted_at=_parse_time(data.get("submittedAt"), "submittedAt"),
            output_path=output_path,
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> TaskRequest:
        return cls.from_dict(_load_document(text))


@dataclass(frozen=True)
class TaskResult:
    """
    任务终态结果

    每个 task_id 至多发布一次。
    - completed: 携带 data，error 为空
    - failed / cancelled: 携带 error，data 为空
    """
    task_id: str
    status: TaskStatus
    completed_at: datetime
    data: Any = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.status.is_terminal:
            raise ValueError(f"结果状态必须是终态: {self.status.value}")
        if self.status != TaskStatus.COMPLETED and self.data is not None:
            raise ValueError("只有 completed 结果可以携带 data")
        if self.status == TaskStatus.COMPLETED and self.error is not None:
            raise ValueError("completed 结果不能携带 error")

    @classmethod
    def completed(cls, task_id: str, data: Any) -> TaskResult:
        return cls(task_id=task_id, status=TaskStatus.COMPLETED, completed_at=utc_now(), data=data)

    @classmethod
    def failed(cls, task_id: str, error: str) -> TaskResult:
        return cls(task_id=task_id, status=TaskStatus.FAILED, completed_at=utc_now(), error=error)

    @classmethod
    def cancelled(cls, task_id: str, error: str = "task was cancelled") -> TaskResult:
        return cls(task_id=task_id, status=TaskStatus.CANCELLED, completed_at=utc_now(), error=error)

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "taskId": self.task_id,
            "status": self.status.value,
            "data": self.data,
            "error": self.error,
            "completedAt": _format_time(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TaskResult:
        """从字典创建"""
        try:
            status = TaskStatus(data.get("status"))
        except ValueError as e:
            raise ProtocolError(f"未知的任务状态: {data.get('status')}") from e
        error = data.get("error")
        if error is not None and not isinstance(error, str):
            raise ProtocolError("字段 error 必须是字符串")
        try:
            return cls(
                task_id=_require_str(data, "taskId"),
                status=status,
                completed_at=_parse_time(data.get("completedAt"), "completedAt"),
                data=data.get("data"),
                error=error,
            )
        except ValueError as e:
            raise ProtocolError(str(e)) from e

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> TaskResult:
        return cls.from_dict(_load_document(text))


@dataclass(frozen=True)
class TaskProgress:
    """任务进度（尽力而为，不保证送达与顺序）"""
    task_id: str
    message: str
    timestamp: datetime
    tool_name: Optional[str] = None
    agent_name: Optional[str] = None
    model_id: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "taskId": self.task_id,
            "message": self.message,
            "timestamp": _format_time(self.timestamp),
            "toolName": self.tool_name,
            "agentName": self.agent_name,
            "modelId": self.model_id,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TaskProgress:
        """从字典创建"""
        message = data.get("message")
        if not isinstance(message, str):
            raise ProtocolError("缺少字段或类型错误: message")
        return cls(
            task_id=_require_str(data, "taskId"),
            message=message,
            timestamp=_parse_time(data.get("timestamp"), "timestamp"),
            tool_name=data.get("toolName"),
            agent_name=data.get("agentName"),
            model_id=data.get("modelId"),
            input_tokens=_optional_int(data, "inputTokens"),
            output_tokens=_optional_int(data, "outputTokens"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> TaskProgress:
        return cls.from_dict(_load_document(text))
