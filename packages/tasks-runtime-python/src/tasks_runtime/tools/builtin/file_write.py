"""
内置工具：Write / Edit（修改 session 工作区内的文件，medium risk）。

约束：
- 写入路径必须位于 session workspace 内（resolve_path 拒绝逃逸）。
"""

from __future__ import annotations

import time

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tasks_runtime.core.errors import UserError
from tasks_runtime.tools.protocol import RiskLevel, ToolCall, ToolResult, ToolSpec
from tasks_runtime.tools.registry import ToolExecutionContext


class _WriteArgs(BaseModel):
    """Write 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    path: str
    content: str
    create_dirs: bool = True


class _EditArgs(BaseModel):
    """Edit 输入参数（精确字符串替换）。"""

    model_config = ConfigDict(extra="forbid")

    path: str
    old_string: str = Field(min_length=1)
    new_string: str
    replace_all: bool = False


WRITE_SPEC = ToolSpec(
    name="Write",
    description="Write a UTF-8 text file inside the session workspace (overwrites existing content).",
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path relative to the session workspace."},
            "content": {"type": "string", "description": "Full file content."},
            "create_dirs": {"type": "boolean", "description": "Create parent directories (default true)."},
        },
        "required": ["path", "content"],
        "additionalProperties": False,
    },
    risk_level=RiskLevel.MEDIUM,
)

EDIT_SPEC = ToolSpec(
    name="Edit",
    description="Replace an exact string in a file inside the session workspace.",
    parameters={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path relative to the session workspace."},
            "old_string": {"type": "string", "description": "Exact text to replace (must be unique unless replace_all)."},
            "new_string": {"type": "string", "description": "Replacement text."},
            "replace_all": {"type": "boolean", "description": "Replace every occurrence (default false)."},
        },
        "required": ["path", "old_string", "new_string"],
        "additionalProperties": False,
    },
    risk_level=RiskLevel.MEDIUM,
)


def file_write(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """执行 Write：覆盖写入文件并返回写入字节数。"""

    start = time.monotonic()
    try:
        args = _WriteArgs.model_validate(call.args)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))

    try:
        p = ctx.resolve_path(args.path)
    except UserError as e:
        return ToolResult.error_payload(error_kind="permission", stderr=e.message)

    if not p.parent.exists():
        if not args.create_dirs:
            return ToolResult.error_payload(error_kind="not_found", stderr=f"parent directory not found: {p.parent}")
        p.parent.mkdir(parents=True, exist_ok=True)

    data = args.content.encode("utf-8")
    p.write_bytes(data)
    duration_ms = int((time.monotonic() - start) * 1000)
    return ToolResult.ok_payload(data={"path": str(p), "bytes": len(data)}, duration_ms=duration_ms)


def file_edit(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """
    执行 Edit。

    约束：
    - old_string 必须存在；replace_all=False 时必须唯一（否则 validation 失败，不做部分修改）。
    """

    try:
        args = _EditArgs.model_validate(call.args)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))

    try:
        p = ctx.resolve_path(args.path)
    except UserError as e:
        return ToolResult.error_payload(error_kind="permission", stderr=e.message)

    if not p.is_file():
        return ToolResult.error_payload(error_kind="not_found", stderr=f"file not found: {args.path}")

    text = p.read_text(encoding="utf-8")
    count = text.count(args.old_string)
    if count == 0:
        return ToolResult.error_payload(error_kind="validation", stderr="old_string not found in file")
    if count > 1 and not args.replace_all:
        return ToolResult.error_payload(
            error_kind="validation",
            stderr=f"old_string occurs {count} times; pass replace_all=true or add context",
        )

    if args.replace_all:
        updated = text.replace(args.old_string, args.new_string)
    else:
        updated = text.replace(args.old_string, args.new_string, 1)
    p.write_text(updated, encoding="utf-8")
    return ToolResult.ok_payload(data={"path": str(p), "replacements": count if args.replace_all else 1})
