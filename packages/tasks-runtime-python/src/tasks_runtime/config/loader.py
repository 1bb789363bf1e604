"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者）；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误与误配置被静默吞掉）；
- 默认配置：`tasks_runtime/assets/default.yaml`（见 `tasks_runtime.config.defaults`）。
"""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from tasks_runtime.tools.protocol import RiskLevel


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型：overlay 直接覆盖
    - list：整体覆盖（不做去重/拼接）
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class TasksRuntimeServerConfig(BaseModel):
    """Protocol Server 监听配置。"""

    model_config = ConfigDict(extra="forbid")

    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    public_url: Optional[str] = None


class TasksRuntimeRunConfig(BaseModel):
    """
    Agent Loop / Task Manager 运行参数。

    字段：
    - max_iterations：默认迭代上限（runner 可覆盖）
    - max_concurrent_tasks：同时运行的 Agent Loop 上限（None = 不限制；排队按优先级准入）
    - tool_timeout_ms：Bash 等工具未显式给出 timeout 时的默认值
    - max_file_bytes：Read 默认最大读取字节数
    """

    model_config = ConfigDict(extra="forbid")

    max_iterations: int = Field(default=10, ge=1)
    max_concurrent_tasks: Optional[int] = Field(default=None, ge=1)
    tool_timeout_ms: int = Field(default=60_000, ge=1)
    max_file_bytes: int = Field(default=256 * 1024, ge=1)


class TasksRuntimeApprovalsConfig(BaseModel):
    """
    审批策略配置（preset + 覆盖项）。

    说明：
    - `preset` 提供 tool 规则 / 风险阈值 / 默认超时的基线（default|strict|permissive）；
    - `default_timeout_sec` 为 None 时使用 preset 的超时；`wait_indefinitely=true` 表示永不超时；
    - `timeout_decision` 为超时后代为做出的决定（默认 deny）。
    """

    model_config = ConfigDict(extra="forbid")

    preset: Literal["default", "strict", "permissive"] = "default"
    default_timeout_sec: Optional[float] = Field(default=None, gt=0)
    wait_indefinitely: bool = False
    timeout_decision: Literal["deny", "approve"] = "deny"
    tool_rules: Dict[str, Literal["auto_approve", "require_approval"]] = Field(default_factory=dict)
    auto_approve_patterns: List[str] = Field(default_factory=list)
    require_approval_patterns: List[str] = Field(default_factory=list)
    max_auto_approve_risk: Optional[RiskLevel] = None
    trust_after_count: Optional[int] = Field(default=None, ge=1)


class TasksRuntimeLlmConfig(BaseModel):
    """LLM 连接配置（OpenAI-compatible chat.completions）。"""

    model_config = ConfigDict(extra="forbid")

    provider: Literal["openai", "fake"] = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    model: str = "gpt-4o-mini"
    temperature: Optional[float] = Field(default=None, ge=0)
    timeout_sec: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=2, ge=0)
    retry_base_delay_sec: float = Field(default=0.5, ge=0)


class TasksRuntimeSessionsConfig(BaseModel):
    """Session 工作区配置。"""

    model_config = ConfigDict(extra="forbid")

    base_dir: str = ".tasks_runtime"
    git_init: bool = False


class TasksRuntimeAgentCardConfig(BaseModel):
    """AgentCard（能力发现文档）配置。"""

    model_config = ConfigDict(extra="forbid")

    class Skill(BaseModel):
        """对外声明的一项能力。"""

        model_config = ConfigDict(extra="forbid")

        id: str
        name: str
        description: str = ""
        tags: List[str] = Field(default_factory=list)
        examples: List[str] = Field(default_factory=list)

    name: str = "tasks-runtime"
    description: str = "Agent task orchestration runtime with human-in-the-loop approvals."
    version: str = "0.1.0"
    streaming: bool = True
    push_notifications: bool = False
    state_transition_history: bool = True
    skills: List[Skill] = Field(default_factory=list)


class TasksRuntimeRunnerConfig(BaseModel):
    """
    单个 runner 的配置。

    字段：
    - enabled：是否对外开放（关闭后路由返回 UnsupportedRunner）
    - tools：可用工具名（None = runner 默认集合）
    - max_iterations/system_prompt：覆盖项（None = 使用全局/内置默认）
    """

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    tools: Optional[List[str]] = None
    max_iterations: Optional[int] = Field(default=None, ge=1)
    system_prompt: Optional[str] = None


class TasksRuntimeRunnersConfig(BaseModel):
    """runner 配置集合（cli / content）。"""

    model_config = ConfigDict(extra="forbid")

    cli: TasksRuntimeRunnerConfig = Field(default_factory=TasksRuntimeRunnerConfig)
    content: TasksRuntimeRunnerConfig = Field(default_factory=TasksRuntimeRunnerConfig)


class TasksRuntimeConfig(BaseModel):
    """配置根对象。"""

    model_config = ConfigDict(extra="forbid")

    config_version: int = Field(default=1, ge=1)
    server: TasksRuntimeServerConfig = Field(default_factory=TasksRuntimeServerConfig)
    run: TasksRuntimeRunConfig = Field(default_factory=TasksRuntimeRunConfig)
    approvals: TasksRuntimeApprovalsConfig = Field(default_factory=TasksRuntimeApprovalsConfig)
    llm: TasksRuntimeLlmConfig = Field(default_factory=TasksRuntimeLlmConfig)
    sessions: TasksRuntimeSessionsConfig = Field(default_factory=TasksRuntimeSessionsConfig)
    agent_card: TasksRuntimeAgentCardConfig = Field(default_factory=TasksRuntimeAgentCardConfig)
    runners: TasksRuntimeRunnersConfig = Field(default_factory=TasksRuntimeRunnersConfig)


def _load_yaml_file(path: Path) -> Dict[str, Any]:
    """读取 YAML 文件为 dict；空文件返回空 dict。"""

    if not path.exists():
        raise FileNotFoundError(f"config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping(dict): {path}")
    return data


def load_config_dicts(config_dicts: list[Dict[str, Any]]) -> TasksRuntimeConfig:
    """
    加载并合并多个 dict 配置，返回校验后的 `TasksRuntimeConfig`。

    参数：
    - config_dicts：按顺序做深度合并（后者覆盖前者）
    """

    merged: Dict[str, Any] = {}
    for overlay in config_dicts:
        if not overlay:
            continue
        _deep_merge(merged, overlay)
    return TasksRuntimeConfig.model_validate(merged)


def load_config(config_paths: list[Path]) -> TasksRuntimeConfig:
    """
    加载并合并多个配置文件，返回校验后的 `TasksRuntimeConfig`。

    参数：
    - config_paths：YAML 路径列表；按顺序合并（后者覆盖前者）
    """

    return load_config_dicts([_load_yaml_file(Path(p)) for p in config_paths])
