"""
内置工具：Glob / Grep（只读搜索，low risk）。

语义：
- Glob：按 glob pattern 列出路径（默认在 session workspace 下；允许绝对路径作为搜索根）
- Grep：返回“包含匹配的文件路径列表 + 首个匹配行”，不返回整文件内容
"""

from __future__ import annotations

import fnmatch
import os
import re
import time
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tasks_runtime.core.errors import UserError
from tasks_runtime.tools.protocol import RiskLevel, ToolCall, ToolResult, ToolSpec
from tasks_runtime.tools.registry import ToolExecutionContext


class _GlobArgs(BaseModel):
    """Glob 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    pattern: str = Field(min_length=1)
    path: Optional[str] = None
    limit: int = Field(default=200, ge=1)


class _GrepArgs(BaseModel):
    """Grep 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    pattern: str = Field(min_length=1)
    path: Optional[str] = None
    include: Optional[str] = None
    limit: int = Field(default=100, ge=1)


GLOB_SPEC = ToolSpec(
    name="Glob",
    description="List files matching a glob pattern (e.g. '*' or '**/*.py').",
    parameters={
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Glob pattern."},
            "path": {"type": "string", "description": "Search root (default: session workspace)."},
            "limit": {"type": "integer", "minimum": 1, "description": "Max entries to return (default 200)."},
        },
        "required": ["pattern"],
        "additionalProperties": False,
    },
    risk_level=RiskLevel.LOW,
)

GREP_SPEC = ToolSpec(
    name="Grep",
    description="Search file contents with a regular expression; returns matching files and the first matching line.",
    parameters={
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Regular expression."},
            "path": {"type": "string", "description": "Search root (default: session workspace)."},
            "include": {"type": "string", "description": "Glob filter on file names (e.g. '*.md')."},
            "limit": {"type": "integer", "minimum": 1, "description": "Max matched files to return (default 100)."},
        },
        "required": ["pattern"],
        "additionalProperties": False,
    },
    risk_level=RiskLevel.LOW,
)


def _resolve_root(ctx: ToolExecutionContext, path: Optional[str]) -> Path:
    """解析搜索根目录（缺省为 workspace_root；只读工具允许绝对路径）。"""

    if not path:
        return Path(ctx.workspace_root).resolve()
    return ctx.resolve_path(path, allow_outside=True)


def glob_files(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """执行 Glob：返回排序后的匹配路径（目录以 `/` 结尾）。"""

    start = time.monotonic()
    try:
        args = _GlobArgs.model_validate(call.args)
        root = _resolve_root(ctx, args.path)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))
    except UserError as e:
        return ToolResult.error_payload(error_kind="permission", stderr=e.message)

    if not root.is_dir():
        return ToolResult.error_payload(error_kind="not_found", stderr=f"directory not found: {root}")

    entries: list[str] = []
    truncated = False
    for p in sorted(root.glob(args.pattern)):
        if len(entries) >= args.limit:
            truncated = True
            break
        rel = p.relative_to(root).as_posix()
        entries.append(rel + "/" if p.is_dir() else rel)

    duration_ms = int((time.monotonic() - start) * 1000)
    return ToolResult.ok_payload(
        stdout="\n".join(entries),
        data={"root": str(root), "entries": entries},
        duration_ms=duration_ms,
        truncated=truncated,
    )


def grep_files(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """执行 Grep：跳过隐藏目录与二进制文件。"""

    start = time.monotonic()
    try:
        args = _GrepArgs.model_validate(call.args)
        root = _resolve_root(ctx, args.path)
        regex = re.compile(args.pattern)
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))
    except re.error as e:
        return ToolResult.error_payload(error_kind="validation", stderr=f"invalid pattern: {e}")
    except UserError as e:
        return ToolResult.error_payload(error_kind="permission", stderr=e.message)

    if not root.exists():
        return ToolResult.error_payload(error_kind="not_found", stderr=f"path not found: {root}")

    files = [root] if root.is_file() else []
    if root.is_dir():
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for name in sorted(filenames):
                if name.startswith("."):
                    continue
                if args.include and not fnmatch.fnmatch(name, args.include):
                    continue
                files.append(Path(dirpath) / name)

    matches: list[dict] = []
    truncated = False
    for f in files:
        if len(matches) >= args.limit:
            truncated = True
            break
        try:
            data = f.read_bytes()
        except OSError:
            continue
        if b"\x00" in data[:8192]:
            continue
        for lineno, line in enumerate(data.decode("utf-8", errors="replace").splitlines(), start=1):
            if regex.search(line):
                matches.append({"path": str(f), "line": lineno, "text": line[:500]})
                break

    duration_ms = int((time.monotonic() - start) * 1000)
    return ToolResult.ok_payload(
        stdout="\n".join(f"{m['path']}:{m['line']}: {m['text']}" for m in matches),
        data={"matches": matches},
        duration_ms=duration_ms,
        truncated=truncated,
    )
