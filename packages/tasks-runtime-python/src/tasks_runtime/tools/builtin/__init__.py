"""
内置工具（builtin tools）。

风险分级：
- low：`Read` / `Glob` / `Grep`（只读/搜索，默认 auto-approve）
- medium：`Write` / `Edit`（修改工作区，默认需要审批）
- high：`Bash`（任意命令执行，默认需要审批）
"""

from __future__ import annotations

from tasks_runtime.tools.builtin.bash import BASH_SPEC, bash
from tasks_runtime.tools.builtin.file_read import READ_SPEC, file_read
from tasks_runtime.tools.builtin.file_write import EDIT_SPEC, WRITE_SPEC, file_edit, file_write
from tasks_runtime.tools.builtin.search import GLOB_SPEC, GREP_SPEC, glob_files, grep_files
from tasks_runtime.tools.registry import ToolRegistry

__all__ = ["BUILTIN_TOOL_NAMES", "register_builtin_tools"]

_BUILTIN_TOOL_ENTRIES = [
    (READ_SPEC, file_read),
    (GLOB_SPEC, glob_files),
    (GREP_SPEC, grep_files),
    (WRITE_SPEC, file_write),
    (EDIT_SPEC, file_edit),
    (BASH_SPEC, bash),
]

BUILTIN_TOOL_NAMES = tuple(spec.name for spec, _ in _BUILTIN_TOOL_ENTRIES)


def register_builtin_tools(registry: ToolRegistry) -> None:
    """把全部内置工具注册到 registry（重复注册会抛 UserError）。"""

    for spec, handler in _BUILTIN_TOOL_ENTRIES:
        registry.register(spec, handler)
