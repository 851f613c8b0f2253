"""
AgentBus 命令行界面

子命令：
- worker: 运行 Worker，直到 SIGINT/SIGTERM
- submit: 提交任务，可选等待结果、显示进度、写出结果文件
- fetch:  从结果存储中读取溢出的结果数据
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, List, Optional

from agentbus.core import AgentBus
from agentbus.system.broker.protocol import (
    AgentBusError,
    TaskProgress,
    TaskResult,
    TaskStatus,
    TransportError,
    new_task_id,
)
from agentbus.system.services.logger import setup_logging


# ANSI颜色代码
class Colors:
    """终端颜色"""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"

    BRIGHT_GREEN = "\033[92m"
    BRIGHT_CYAN = "\033[96m"


STATUS_COLORS = {
    TaskStatus.COMPLETED: Colors.GREEN,
    TaskStatus.FAILED: Colors.RED,
    TaskStatus.CANCELLED: Colors.YELLOW,
}


def colorize(text: str, color: str) -> str:
    """给文本添加颜色"""
    return f"{color}{text}{Colors.RESET}"


def parse_executor_option(value: str) -> tuple:
    """解析 --executor TAG=module:callable"""
    agent_type, sep, target = value.partition("=")
    if not sep or not agent_type.strip() or not target.strip():
        raise argparse.ArgumentTypeError(f"格式应为 TAG=module:callable: {value}")
    return agent_type.strip(), target.strip()


def display_result(result: TaskResult) -> None:
    """打印终态结果"""
    color = STATUS_COLORS.get(result.status, Colors.RESET)
    print(colorize(f"[{result.status.value}] ", color + Colors.BOLD) + colorize(result.task_id, Colors.DIM))
    if result.error:
        print(colorize(f"  错误: {result.error}", Colors.RED))
    if result.data is not None:
        print(json.dumps(result.data, ensure_ascii=False, indent=2))


def display_progress(progress: TaskProgress) -> None:
    """打印进度"""
    parts = [progress.message]
    if progress.tool_name:
        parts.append(f"tool={progress.tool_name}")
    if progress.input_tokens or progress.output_tokens:
        parts.append(f"tokens={progress.input_tokens or 0}/{progress.output_tokens or 0}")
    print(colorize("  ... " + " | ".join(parts), Colors.CYAN))


def write_output(path: str, data: Any) -> None:
    """把结果数据以 JSON 写入文件"""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    """SIGINT/SIGTERM 置位 stop_event（平台不支持时退回 KeyboardInterrupt）"""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            continue


async def run_worker(args: argparse.Namespace) -> int:
    """运行 Worker"""
    bus = AgentBus(args.config)
    await bus.initialize()
    try:
        registry = bus.create_registry()
        for agent_type, target in args.executor or []:
            registry.register_from_path(agent_type, target)
        dispatcher = bus.create_dispatcher(registry)
        await dispatcher.start()

        print(colorize(f"Worker 已启动，执行器: {', '.join(registry.list_agent_types())}", Colors.GREEN))
        print(colorize("按 Ctrl+C 停止", Colors.DIM))

        stop_event = asyncio.Event()
        install_signal_handlers(stop_event)
        stop_waiter = asyncio.create_task(stop_event.wait())
        stopped_waiter = asyncio.create_task(dispatcher.wait_stopped())
        _, pending = await asyncio.wait({stop_waiter, stopped_waiter}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()

        stats = dispatcher.get_stats()
        print(colorize(
            f"\n正在停止 Worker (完成 {stats['completed']}, 失败 {stats['failed']}, 取消 {stats['cancelled']})",
            Colors.CYAN,
        ))
    finally:
        await bus.shutdown()
    return 0


async def start_progress_listener(service: Any, task_id: str) -> asyncio.Task:
    """
    订阅任务进度并等待订阅生效

    进度只推送给已经订阅的一方，必须在提交任务之前调用。

    Raises:
        TransportError: 无法订阅进度话题
    """
    started = asyncio.Event()
    listener = asyncio.create_task(service.subscribe_to_progress(task_id, display_progress, started=started))
    waiter = asyncio.create_task(started.wait())
    await asyncio.wait({listener, waiter}, return_when=asyncio.FIRST_COMPLETED)
    if not started.is_set():
        waiter.cancel()
        listener.result()
        raise TransportError(f"进度订阅意外结束: {task_id}")
    return listener


async def run_submit(args: argparse.Namespace) -> int:
    """提交任务"""
    async with AgentBus(args.config) as bus:
        service = bus.create_task_service()
        task_id = new_task_id()

        progress_task: Optional[asyncio.Task] = None
        if args.progress and args.wait is not None:
            progress_task = await start_progress_listener(service, task_id)
        try:
            await service.submit_task(args.agent_type, args.prompt, output_path=args.output, task_id=task_id)
            print(colorize("任务已提交: ", Colors.GREEN) + colorize(task_id, Colors.BOLD))
            if args.wait is None:
                return 0
            result = await service.wait_for_result(task_id, timeout=args.wait)
        finally:
            if progress_task is not None:
                progress_task.cancel()
                await asyncio.gather(progress_task, return_exceptions=True)

        if result is None:
            print(colorize(f"等待 {args.wait:g}s 未收到结果，任务仍在执行。", Colors.YELLOW))
            print(colorize(f"稍后可用 `agentbus fetch {task_id}` 查询溢出存储的结果", Colors.DIM))
            return 2

        display_result(result)
        if args.output and result.succeeded:
            write_output(args.output, result.data)
            print(colorize(f"结果已写入: {args.output}", Colors.GREEN))
        return 0 if result.succeeded else 1


async def run_fetch(args: argparse.Namespace) -> int:
    """读取溢出存储中的结果数据"""
    async with AgentBus(args.config) as bus:
        data = await bus.broker.retrieve_result_data(args.task_id)
    if data is None:
        print(colorize(f"未找到结果数据（已过期或结果未溢出存储）: {args.task_id}", Colors.YELLOW))
        return 1
    print(json.dumps(data, ensure_ascii=False, indent=2))
    return 0


COMMANDS = {
    "worker": run_worker,
    "submit": run_submit,
    "fetch": run_fetch,
}


async def main_async(args: argparse.Namespace) -> int:
    """异步主函数"""
    log_level = "DEBUG" if args.verbose else ("INFO" if args.command == "worker" else "WARNING")
    setup_logging(level=log_level, use_enhanced_format=args.verbose or args.command == "worker")

    try:
        return await COMMANDS[args.command](args)
    except AgentBusError as e:
        print(colorize(f"错误: {e}", Colors.RED))
        return 1
    except (ImportError, AttributeError, ValueError, TypeError) as e:
        print(colorize(f"配置错误: {e}", Colors.RED))
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentbus",
        description="AgentBus - 异步 Agent 任务代理 CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  %(prog)s worker -c configs/agentbus.yaml
  %(prog)s worker --executor research=myagents.research:run
  %(prog)s submit echo "hello" --wait 10
  %(prog)s submit research "调研异步任务队列" --wait 600 --progress --output out/report.json
  %(prog)s fetch 3f2a...
        """,
    )
    # 通用参数放在各子命令上: agentbus worker -c CONFIG
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-c", "--config", default=None, help="配置文件路径 (默认 configs/agentbus.yaml)")
    common.add_argument("-v", "--verbose", action="store_true", help="显示详细信息")

    subparsers = parser.add_subparsers(dest="command", required=True)

    worker = subparsers.add_parser("worker", parents=[common], help="运行 Worker")
    worker.add_argument(
        "--executor",
        action="append",
        type=parse_executor_option,
        metavar="TAG=module:callable",
        help="注册执行器，可重复",
    )

    submit = subparsers.add_parser("submit", parents=[common], help="提交任务")
    submit.add_argument("agent_type", help="Agent 类型")
    submit.add_argument("prompt", help="任务描述")
    submit.add_argument("--output", default=None, help="完成后把结果数据写入该文件 (JSON)")
    submit.add_argument("--wait", type=float, default=None, metavar="SECONDS", help="等待结果的秒数")
    submit.add_argument("--progress", action="store_true", help="等待期间显示进度")

    fetch = subparsers.add_parser("fetch", parents=[common], help="读取溢出存储的结果数据")
    fetch.add_argument("task_id", help="任务ID")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """主函数"""
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        print(colorize("\n已中断", Colors.CYAN))
        return 130


if __name__ == "__main__":
    sys.exit(main())
