"""
Agent 层

- worker: Worker 端调度与执行器
- client: 提交端任务服务
"""
