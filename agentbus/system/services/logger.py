"""
日志服务

提供统一的日志初始化和按层级标识的日志记录。
支持trace_id追踪：在任务处理链路上 trace_id 即为 task_id，
同一个任务在提交端与 Worker 端的日志可以按 task_id 串联。
"""

import contextvars
import logging
import sys
from dataclasses import dataclass
from typing import Dict, Optional, Union

# 日志格式 - 增强版，包含trace_id、层级、组件
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(trace_id)s | %(layer)s | %(component)s | %(message)s"
LOG_FORMAT_SIMPLE = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_initialized = False

# 上下文变量
_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="-")
_layer_var: contextvars.ContextVar[str] = contextvars.ContextVar("layer", default="-")
_component_var: contextvars.ContextVar[str] = contextvars.ContextVar("component", default="-")


class Layer:
    """系统层级常量"""
    TRANSPORT = "Transport"
    STORE = "Store"
    BROKER = "Broker"
    WORKER = "Worker"
    CLIENT = "Client"
    CLI = "CLI"


@dataclass
class LogContext:
    """日志上下文"""
    trace_id: str = "-"
    layer: str = "-"
    component: str = "-"

    def to_dict(self) -> Dict[str, str]:
        return {
            "trace_id": self.trace_id,
            "layer": self.layer,
            "component": self.component,
        }


class TraceIdFilter(logging.Filter):
    """添加trace_id到日志记录的过滤器"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()
        record.layer = _layer_var.get()
        record.component = _component_var.get()
        return True


def set_trace_context(
    trace_id: Optional[str] = None,
    layer: Optional[str] = None,
    component: Optional[str] = None,
) -> None:
    """
    设置当前上下文的追踪信息

    asyncio 任务创建时会复制当前上下文，因此在任务内部设置
    不会影响其它并发任务。
    """
    if trace_id is not None:
        _trace_id_var.set(trace_id)
    if layer is not None:
        _layer_var.set(layer)
    if component is not None:
        _component_var.set(component)


def get_trace_context() -> LogContext:
    """获取当前上下文的追踪信息"""
    return LogContext(
        trace_id=_trace_id_var.get(),
        layer=_layer_var.get(),
        component=_component_var.get(),
    )


def clear_trace_context() -> None:
    """清除追踪上下文"""
    _trace_id_var.set("-")
    _layer_var.set("-")
    _component_var.set("-")


class TraceContextManager:
    """追踪上下文管理器，退出时恢复进入前的值"""

    def __init__(
        self,
        trace_id: Optional[str] = None,
        layer: Optional[str] = None,
        component: Optional[str] = None,
    ):
        self.trace_id = trace_id
        self.layer = layer
        self.component = component
        self._tokens = []

    def __enter__(self) -> "TraceContextManager":
        if self.trace_id is not None:
            self._tokens.append((_trace_id_var, _trace_id_var.set(self.trace_id)))
        if self.layer is not None:
            self._tokens.append((_layer_var, _layer_var.set(self.layer)))
        if self.component is not None:
            self._tokens.append((_component_var, _component_var.set(self.component)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


def trace_context(
    trace_id: Optional[str] = None,
    layer: Optional[str] = None,
    component: Optional[str] = None,
) -> TraceContextManager:
    """
    创建追踪上下文管理器

    用法:
        with trace_context(trace_id=task_id, layer=Layer.WORKER, component="WorkerDispatcher"):
            logger.info("处理中...")
    """
    return TraceContextManager(trace_id, layer, component)


def setup_logging(
    level: Union[int, str] = logging.INFO,
    use_enhanced_format: bool = True,
    force: bool = False,
) -> None:
    """
    初始化日志系统

    Args:
        level: 日志级别（整数或 "DEBUG"/"INFO" 等名称）
        use_enhanced_format: 是否使用增强格式（包含trace_id、层级等）
        force: 已初始化时是否重新配置
    """
    global _initialized

    if _initialized and not force:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    log_format = LOG_FORMAT if use_enhanced_format else LOG_FORMAT_SIMPLE
    console_handler.setFormatter(logging.Formatter(log_format, DATE_FORMAT))

    if use_enhanced_format:
        console_handler.addFilter(TraceIdFilter())

    root_logger.addHandler(console_handler)
    _initialized = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    获取日志器

    Args:
        name: 日志器名称，通常使用 __name__

    Returns:
        Logger 实例
    """
    if not _initialized:
        setup_logging()

    return logging.getLogger(name or "agentbus")


class LoggerMixin:
    """
    日志器混入类，为类提供 self.logger 属性

    子类通过 _log_layer 声明所属层级，log_* 方法会自动带上层级与组件名。
    """

    _log_layer: str = "-"

    @property
    def logger(self) -> logging.Logger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger

    def _context(self, trace_id: Optional[str]) -> TraceContextManager:
        return trace_context(trace_id=trace_id, layer=self._log_layer, component=self.__class__.__name__)

    def log_info(self, message: str, trace_id: Optional[str] = None) -> None:
        """带上下文的INFO日志"""
        with self._context(trace_id):
            self.logger.info(message)

    def log_debug(self, message: str, trace_id: Optional[str] = None) -> None:
        """带上下文的DEBUG日志"""
        with self._context(trace_id):
            self.logger.debug(message)

    def log_warning(self, message: str, trace_id: Optional[str] = None) -> None:
        """带上下文的WARNING日志"""
        with self._context(trace_id):
            self.logger.warning(message)

    def log_error(self, message: str, trace_id: Optional[str] = None) -> None:
        """带上下文的ERROR日志"""
        with self._context(trace_id):
            self.logger.error(message)


# 层级专用的LoggerMixin
class TransportLoggerMixin(LoggerMixin):
    """传输层日志混入"""
    _log_layer = Layer.TRANSPORT


class StoreLoggerMixin(LoggerMixin):
    """存储层日志混入"""
    _log_layer = Layer.STORE


class BrokerLoggerMixin(LoggerMixin):
    """Broker 层日志混入"""
    _log_layer = Layer.BROKER


class WorkerLoggerMixin(LoggerMixin):
    """Worker 层日志混入"""
    _log_layer = Layer.WORKER


class ClientLoggerMixin(LoggerMixin):
    """提交端日志混入"""
    _log_layer = Layer.CLIENT
