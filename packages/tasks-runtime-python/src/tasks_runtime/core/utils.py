"""共享工具函数（时间戳 / id 生成）。"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone


def now_rfc3339() -> str:
    """返回当前 UTC 时间的 RFC3339 字符串（以 Z 结尾）。"""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_id(prefix: str) -> str:
    """
    生成进程内全局唯一的 id（形如 `task_<hex>`）。

    参数：
    - prefix：id 前缀（例如 task/apr/sess/call）
    """

    return f"{prefix}_{uuid.uuid4().hex}"
