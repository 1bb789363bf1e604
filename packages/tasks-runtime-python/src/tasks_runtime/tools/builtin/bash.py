"""
内置工具：Bash（在 session workspace 中执行 shell 命令，high risk）。

约束：
- 仅在审批通过（或策略显式 auto-approve）后才会被调用；
- 超时返回 `error_kind=timeout`，不抛异常；
- 非零 exit code 视为工具失败（ok=false, error_kind=exit_code），由模型决定下一步。
"""

from __future__ import annotations

import subprocess
import time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tasks_runtime.core.errors import UserError
from tasks_runtime.tools.protocol import RiskLevel, ToolCall, ToolResult, ToolSpec
from tasks_runtime.tools.registry import ToolExecutionContext

_MAX_OUTPUT_CHARS = 64 * 1024


class _BashArgs(BaseModel):
    """Bash 输入参数。"""

    model_config = ConfigDict(extra="forbid")

    command: str = Field(min_length=1)
    workdir: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, ge=1)


BASH_SPEC = ToolSpec(
    name="Bash",
    description="Run a shell command inside the session workspace and return stdout/stderr.",
    parameters={
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Command line passed to /bin/sh -c."},
            "workdir": {"type": "string", "description": "Working directory relative to the session workspace."},
            "timeout_ms": {"type": "integer", "minimum": 1, "description": "Timeout in milliseconds."},
        },
        "required": ["command"],
        "additionalProperties": False,
    },
    risk_level=RiskLevel.HIGH,
)


def _clip(text: str) -> tuple[str, bool]:
    """截断过长输出（保留尾部，通常包含错误信息）。"""

    if len(text) <= _MAX_OUTPUT_CHARS:
        return text, False
    return "...<truncated>\n" + text[-_MAX_OUTPUT_CHARS:], True


def bash(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
    """执行 Bash。"""

    start = time.monotonic()
    try:
        args = _BashArgs.model_validate(call.args)
        cwd = ctx.resolve_path(args.workdir) if args.workdir else ctx.resolve_path(".")
    except ValidationError as e:
        return ToolResult.error_payload(error_kind="validation", stderr=str(e))
    except UserError as e:
        return ToolResult.error_payload(error_kind="permission", stderr=e.message)

    timeout_ms = args.timeout_ms or ctx.default_timeout_ms
    try:
        proc = subprocess.run(
            ["/bin/sh", "-c", args.command],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout_ms / 1000.0,
        )
    except subprocess.TimeoutExpired:
        duration_ms = int((time.monotonic() - start) * 1000)
        return ToolResult.error_payload(
            error_kind="timeout",
            stderr=f"command timed out after {timeout_ms} ms",
            duration_ms=duration_ms,
            retryable=True,
        )
    except OSError as e:
        return ToolResult.error_payload(error_kind="unknown", stderr=str(e))

    duration_ms = int((time.monotonic() - start) * 1000)
    stdout, out_trunc = _clip(proc.stdout or "")
    stderr, err_trunc = _clip(proc.stderr or "")
    if proc.returncode != 0:
        return ToolResult.error_payload(
            error_kind="exit_code",
            stderr=stderr or f"exit code {proc.returncode}",
            exit_code=proc.returncode,
            data={"stdout": stdout},
            duration_ms=duration_ms,
        )
    return ToolResult.ok_payload(
        stdout=stdout,
        data={"stderr": stderr} if stderr else None,
        duration_ms=duration_ms,
        truncated=out_trunc or err_trunc,
    )
