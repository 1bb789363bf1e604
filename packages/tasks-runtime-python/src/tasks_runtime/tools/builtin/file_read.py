"""
内置工具：Read（读取文本文件，low risk）。
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tasks_runtime.core.errors import UserError
from tasks_runtime.tools.protocol import RiskLevel, ToolCall, ToolResult, ToolSpec
from tasks_runtime.tools.registry import ToolExecutionContext


class _ReadArgs(BaseModel):
    """Read 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    path: str
    max_bytes: Optional[int] = Field(default=None, ge=1)


READ_SPEC = ToolSpec(
    name="Read",
    description="Read a UTF-8 text file and return its content (may be truncated).",
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path (relative to the session workspace, or absolute)."},
            "max_bytes": {"type": "integer", "minimum": 1, "description": "Maximum bytes to read (optional)."},
        },
        "required": ["path"],
        "additionalProperties": False,
    },
    risk_level=RiskLevel.LOW,
)


def _read_text_with_limit(path: Path, *, max_bytes: int, marker: bytes) -> tuple[str, bool]:
    """
    读取文件内容并在超出 max_bytes 时进行 head+tail 截断。

    返回：
    - text：UTF-8 解码文本（非法字节替换）
    - truncated：是否发生截断
    """

    st = path.stat()
    if st.st_size <= max_bytes:
        return path.read_bytes().decode("utf-8", errors="replace"), False

    head_len = max_bytes // 2
    tail_len = max_bytes - head_len
    with path.open("rb") as f:
        head = f.read(head_len)
        tail = b""
        if tail_len > 0:
            try:
                f.seek(-tail_len, os.SEEK_END)
                tail = f.read(tail_len)
            except OSError:
                tail = b""
    return (head + marker + tail).decode("utf-8", errors="replace"), True


def file_read(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 Read。

    返回：
    - ok=true：stdout 为读取到的文本（可能截断）
    - ok=false：error_kind 为 validation/not_found/unknown
    """

    start = time.monotonic()
    try:
        args = _ReadArgs.model_validate(call.args)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))

    try:
        p = ctx.resolve_path(args.path, allow_outside=True)
    except UserError as e:
        return ToolResult.error_payload(error_kind="permission", stderr=e.message)

    if not p.is_file():
        return ToolResult.error_payload(error_kind="not_found", stderr=f"file not found: {args.path}", data={"path": args.path})

    max_bytes = args.max_bytes if args.max_bytes is not None else ctx.max_file_bytes
    try:
        text, truncated = _read_text_with_limit(p, max_bytes=max_bytes, marker=b"\n...<truncated>\n")
    except OSError as e:
        return ToolResult.error_payload(error_kind="unknown", stderr=str(e))

    duration_ms = int((time.monotonic() - start) * 1000)
    return ToolResult.ok_payload(stdout=text, data={"path": str(p)}, duration_ms=duration_ms, truncated=truncated)
