"""
Session Provider：为每个 task 分配隔离、可审计的工作区。

编排层只消费：
- `SessionProvider.create() -> SessionHandle`
- `SessionHandle.root() -> Path`

约束：
- 一个 task 独占一个 session；不同 task 的 Agent Loop 不会共享同一工作区。
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from tasks_runtime.core.errors import SessionCreationError
from tasks_runtime.core.utils import new_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionHandle:
    """工作区引用（不透明句柄）。"""

    id: str
    path: Path

    def root(self) -> Path:
        """返回工作区根目录（绝对路径）。"""

        return self.path


@runtime_checkable
class SessionProvider(Protocol):
    """Session 分配器抽象（外部协作者）。"""

    def create(self) -> SessionHandle:
        """
        分配一个新工作区。

        异常：
        - SessionCreationError：无法分配工作区
        """

        ...


class WorkspaceSessionProvider:
    """
    基于本地目录的 SessionProvider：`<base_dir>/sessions/<session_id>`。

    说明：
    - `git_init=True` 时在新目录执行 `git init`，让工作区变更可审计；
    - 任何 OS/git 失败都转换为 `SessionCreationError`（submit 失败，task 不会被创建）。
    """

    def __init__(self, *, base_dir: Path, git_init: bool = False) -> None:
        """
        参数：
        - base_dir：工作区根目录（会自动创建）
        - git_init：是否为每个 session 初始化 git 仓库
        """

        self._base_dir = Path(base_dir).expanduser().resolve()
        self._git_init = bool(git_init)

    @property
    def base_dir(self) -> Path:
        """工作区根目录。"""

        return self._base_dir

    def create(self) -> SessionHandle:
        """创建 `<base_dir>/sessions/<id>` 并返回句柄。"""

        session_id = new_id("sess")
        path = self._base_dir / "sessions" / session_id
        try:
            path.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            raise SessionCreationError(f"failed to create session workspace {path}: {e}") from e

        if self._git_init:
            try:
                subprocess.run(
                    ["git", "init", "--quiet"],
                    cwd=str(path),
                    check=True,
                    capture_output=True,
                    timeout=30,
                )
            except (OSError, subprocess.SubprocessError) as e:
                raise SessionCreationError(f"git init failed for session {session_id}: {e}") from e

        logger.debug("session %s created at %s", session_id, path)
        return SessionHandle(id=session_id, path=path)
