"""
Task Router：按 runner 选择 AgentConfigurationFactory 并转交 Task Manager。

说明：
- 两种 runner（cli / content）共享同一个 Task Manager 与 Approval Manager，
  区别只在工具集合、系统提示词与迭代预算；
- `auto` 由关键词打分决定：代码/命令行/git/构建类 prompt 走 cli，其余走 content。
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Dict, List, Mapping

from pydantic import BaseModel, ConfigDict, Field

from tasks_runtime.core.contracts import Task, TaskPriority
from tasks_runtime.core.errors import UnsupportedRunnerError
from tasks_runtime.core.task_manager import AgentConfigurationFactory, TaskManager

logger = logging.getLogger(__name__)


class RunnerKind(str, Enum):
    """runner 类型。"""

    CLI = "cli"
    CONTENT = "content"
    AUTO = "auto"


class TaskSubmission(BaseModel):
    """
    一次提交（协议层 submitTask 的参数）。

    字段：
    - prompt：用户输入（非空）
    - runner：runner 名（cli/content/auto；大小写不敏感）
    - priority：准入优先级
    """

    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(min_length=1)
    runner: str = RunnerKind.AUTO.value
    priority: TaskPriority = TaskPriority.NORMAL


_CLI_KEYWORDS = (
    "bash",
    "build",
    "bug",
    "cli",
    "code",
    "command",
    "commit",
    "compile",
    "debug",
    "deploy",
    "directory",
    "file",
    "files",
    "function",
    "git",
    "install",
    "lint",
    "ls",
    "make",
    "npm",
    "pip",
    "pytest",
    "refactor",
    "repo",
    "run",
    "script",
    "shell",
    "test",
    "tests",
)

_CONTENT_KEYWORDS = (
    "article",
    "blog",
    "draft",
    "email",
    "essay",
    "outline",
    "post",
    "proofread",
    "research",
    "rewrite",
    "summarize",
    "summary",
    "translate",
    "tweet",
    "write",
)

_WORD_RE = re.compile(r"[a-z0-9_+.-]+")


def classify_runner(prompt: str) -> RunnerKind:
    """
    对 prompt 做关键词打分，返回 cli 或 content。

    规则：
    - cli 关键词命中数 > 0 且不少于 content 命中数 → cli；
    - 路径/命令特征（`/`、反引号）额外为 cli 加一分；
    - 否则 → content。
    """

    text = str(prompt or "").lower()
    words = _WORD_RE.findall(text)
    cli_score = sum(1 for w in words if w in _CLI_KEYWORDS)
    content_score = sum(1 for w in words if w in _CONTENT_KEYWORDS)
    if "`" in text or re.search(r"(^|\s)(/|\./|~/)\S", text):
        cli_score += 1
    if cli_score > 0 and cli_score >= content_score:
        return RunnerKind.CLI
    return RunnerKind.CONTENT


class TaskRouter:
    """runner → factory 的路由表。"""

    def __init__(self, *, task_manager: TaskManager, factories: Mapping[str, AgentConfigurationFactory]) -> None:
        """
        参数：
        - task_manager：共享 Task Manager
        - factories：已启用的 runner → AgentConfigurationFactory（禁用的 runner 不出现在这里）
        """

        self._task_manager = task_manager
        self._factories: Dict[str, AgentConfigurationFactory] = {str(k).lower(): v for k, v in factories.items()}

    @property
    def runners(self) -> List[str]:
        """当前可用的 runner 名（含 auto）。"""

        names = sorted(self._factories)
        return names + [RunnerKind.AUTO.value] if names else []

    def resolve_runner(self, runner: str, prompt: str = "") -> str:
        """
        把声明的 runner 解析为一个已启用的具体 runner。

        异常：
        - UnsupportedRunnerError：未知或未启用的 runner
        """

        name = str(runner or "").strip().lower()
        if name == RunnerKind.AUTO.value:
            preferred = classify_runner(prompt).value
            if preferred in self._factories:
                return preferred
            for fallback in (RunnerKind.CLI.value, RunnerKind.CONTENT.value):
                if fallback in self._factories:
                    return fallback
            raise UnsupportedRunnerError(runner, supported=self.runners)
        if name not in self._factories:
            raise UnsupportedRunnerError(runner, supported=self.runners)
        return name

    async def route(self, submission: TaskSubmission) -> Task:
        """
        路由并提交。

        返回：
        - submitted 状态的 Task 快照

        异常：
        - UnsupportedRunnerError：runner 不可用
        - SessionCreationError：工作区分配失败（透传自 Task Manager）
        """

        kind = self.resolve_runner(submission.runner, submission.prompt)
        if kind != str(submission.runner).strip().lower():
            logger.debug("runner %s resolved to %s", submission.runner, kind)
        return await self._task_manager.submit(
            submission.prompt,
            kind,
            submission.priority,
            factory=self._factories[kind],
        )
