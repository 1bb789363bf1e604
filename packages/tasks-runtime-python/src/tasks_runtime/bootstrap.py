"""
Bootstrap Layer（配置发现 + 服务装配）。

设计目标：
- 核心组件不做隐式 I/O：TaskManager/ApprovalManager 等都由这里显式构造并注入；
- Web/CLI 复用同一入口：`load_runtime_config(...)` + `build_runtime_services(...)`；
- 没有全局单例：`RuntimeServices.aclose()` 负责关闭。
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from tasks_runtime.config.defaults import load_default_config_dict
from tasks_runtime.config.loader import TasksRuntimeConfig, TasksRuntimeLlmConfig, _load_yaml_file, load_config_dicts
from tasks_runtime.core.router import TaskRouter
from tasks_runtime.core.runners import CliRunnerFactory, ContentAgentFactory
from tasks_runtime.core.task_manager import AgentConfigurationFactory, TaskManager
from tasks_runtime.llm.fake import echo_client
from tasks_runtime.llm.openai_chat import OpenAIChatClient
from tasks_runtime.llm.protocol import LlmClient
from tasks_runtime.safety.approval_manager import ApprovalManager
from tasks_runtime.safety.policy import ApprovalPolicy, ApprovalTrustTracker
from tasks_runtime.server.agent_card import AgentCard, build_agent_card
from tasks_runtime.sessions import SessionProvider, WorkspaceSessionProvider
from tasks_runtime.tools.builtin import register_builtin_tools
from tasks_runtime.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

CONFIG_PATHS_ENV = "TASKS_RUNTIME_CONFIG_PATHS"
LLM_BASE_URL_ENV = "TASKS_RUNTIME_LLM_BASE_URL"
LLM_MODEL_ENV = "TASKS_RUNTIME_LLM_MODEL"


def _get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """读取 env 并返回非空白字符串（否则视为未设置）。"""

    v = (env if env is not None else os.environ).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _split_paths(raw: str) -> list[str]:
    """将逗号/分号分隔的路径串切分为片段列表（保序，去掉空项）。"""

    parts: list[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def discover_overlay_paths(*, workspace_root: Path, env: Optional[Mapping[str, str]] = None) -> list[Path]:
    """
    overlay 路径发现规则（固定，顺序稳定）：
    1) 默认 overlay：`<workspace_root>/config/tasks_runtime.yaml`（存在时）
    2) `TASKS_RUNTIME_CONFIG_PATHS`（逗号/分号分隔；相对路径按 workspace_root 解析）
    """

    ws = Path(workspace_root).resolve()
    overlays: list[Path] = []

    default_overlay = ws / "config" / "tasks_runtime.yaml"
    if default_overlay.exists():
        overlays.append(default_overlay)

    for p in _split_paths(_get_env_nonempty(CONFIG_PATHS_ENV, env=env) or ""):
        pp = Path(p).expanduser()
        overlays.append(pp.resolve() if pp.is_absolute() else (ws / pp).resolve())

    seen: set[Path] = set()
    uniq: list[Path] = []
    for p in overlays:
        if p in seen:
            continue
        seen.add(p)
        uniq.append(p)
    return uniq


def _env_overrides(env: Optional[Mapping[str, str]]) -> Dict[str, Any]:
    """环境变量覆盖项（优先级最高）。"""

    llm: Dict[str, Any] = {}
    base_url = _get_env_nonempty(LLM_BASE_URL_ENV, env=env)
    if base_url:
        llm["base_url"] = base_url
    model = _get_env_nonempty(LLM_MODEL_ENV, env=env)
    if model:
        llm["model"] = model
    return {"llm": llm} if llm else {}


def load_runtime_config(
    *,
    workspace_root: Path,
    config_paths: Sequence[Path] = (),
    env: Optional[Mapping[str, str]] = None,
) -> TasksRuntimeConfig:
    """
    加载最终配置：内置默认 → 发现的 overlays → 显式 config_paths → 环境变量覆盖。

    异常：
    - FileNotFoundError：显式/发现的 overlay 文件不存在
    - pydantic.ValidationError：配置不合法（未知字段、类型错误）
    """

    dicts = [load_default_config_dict()]
    paths = discover_overlay_paths(workspace_root=workspace_root, env=env)
    for p in config_paths:
        pp = Path(p).expanduser().resolve()
        if pp not in paths:
            paths.append(pp)
    for p in paths:
        dicts.append(_load_yaml_file(p))
        logger.debug("config overlay loaded: %s", p)
    dicts.append(_env_overrides(env))
    return load_config_dicts(dicts)


def build_llm_client(cfg: TasksRuntimeLlmConfig) -> LlmClient:
    """按 `llm.provider` 构造 LLM client（fake = 回显 prompt）。"""

    if cfg.provider == "fake":
        return echo_client()
    return OpenAIChatClient(cfg)


@dataclass
class RuntimeServices:
    """
    显式装配的服务集合（Protocol Server / CLI 的唯一依赖）。

    字段：
    - config：最终配置
    - approvals/task_manager/router：编排核心
    - tools/llm/session_provider：外部协作者
    - policy/trust：审批策略与信任计数
    - agent_card：能力发现文档（启动时构造，之后不可变）
    """

    config: TasksRuntimeConfig
    approvals: ApprovalManager
    task_manager: TaskManager
    router: TaskRouter
    tools: ToolRegistry
    llm: LlmClient
    session_provider: SessionProvider
    policy: ApprovalPolicy
    trust: ApprovalTrustTracker
    agent_card: AgentCard

    async def aclose(self) -> None:
        """关闭：取消运行中的 task 并结束订阅。"""

        await self.task_manager.aclose()


def build_runtime_services(
    config: TasksRuntimeConfig,
    *,
    workspace_root: Optional[Path] = None,
    llm_client: Optional[LlmClient] = None,
    session_provider: Optional[SessionProvider] = None,
    tool_registry: Optional[ToolRegistry] = None,
) -> RuntimeServices:
    """
    按配置装配全部服务（依赖注入；测试可替换 llm/session/tools）。

    参数：
    - config：最终配置
    - workspace_root：`sessions.base_dir` 为相对路径时的解析基准（默认 cwd）
    - llm_client/session_provider/tool_registry：可选替换
    """

    ws = Path(workspace_root or Path.cwd()).resolve()
    policy = ApprovalPolicy.from_config(config.approvals)
    approvals = ApprovalManager(timeout_decision=config.approvals.timeout_decision)
    trust = ApprovalTrustTracker()

    tools = tool_registry
    if tools is None:
        tools = ToolRegistry()
        register_builtin_tools(tools)

    llm = llm_client if llm_client is not None else build_llm_client(config.llm)

    if session_provider is None:
        base_dir = Path(config.sessions.base_dir).expanduser()
        if not base_dir.is_absolute():
            base_dir = ws / base_dir
        session_provider = WorkspaceSessionProvider(base_dir=base_dir, git_init=config.sessions.git_init)

    task_manager = TaskManager(
        session_provider=session_provider,
        approvals=approvals,
        trust=trust,
        max_concurrent_tasks=config.run.max_concurrent_tasks,
        keep_history=config.agent_card.state_transition_history,
        tool_timeout_ms=config.run.tool_timeout_ms,
        max_file_bytes=config.run.max_file_bytes,
    )

    factories: Dict[str, AgentConfigurationFactory] = {}
    for kind, factory_cls in (("cli", CliRunnerFactory), ("content", ContentAgentFactory)):
        rc = getattr(config.runners, kind)
        if not rc.enabled:
            continue
        factories[kind] = factory_cls(
            tools=tools,
            llm=llm,
            policy=policy,
            max_iterations=rc.max_iterations or config.run.max_iterations,
            model=config.llm.model,
            system_prompt=rc.system_prompt,
            tool_names=rc.tools,
        )
    router = TaskRouter(task_manager=task_manager, factories=factories)

    logger.info("runtime services built (runners=%s, preset=%s)", ",".join(sorted(factories)) or "-", config.approvals.preset)
    return RuntimeServices(
        config=config,
        approvals=approvals,
        task_manager=task_manager,
        router=router,
        tools=tools,
        llm=llm,
        session_provider=session_provider,
        policy=policy,
        trust=trust,
        agent_card=build_agent_card(config),
    )
