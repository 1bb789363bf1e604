"""
tasks-runtime CLI（serve / config）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）；
- `config` 子命令 stdout 输出机器可读 JSON；失败时同样输出 JSON（exit code 2）。
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from tasks_runtime.bootstrap import build_runtime_services, load_runtime_config
from tasks_runtime.config.loader import TasksRuntimeConfig
from tasks_runtime.safety.policy import ApprovalPolicy, policy_summary

_LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """将 dict 输出为 JSON 到 stdout（末尾包含换行）。"""

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="tasks-runtime",
        description="Agent task orchestration runtime (A2A JSON-RPC server).",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--workspace-root", default=".", help="Workspace root directory (default: .)")
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")

    serve = root_sub.add_parser("serve", help="Start the protocol server")
    _add_common_flags(serve)
    serve.add_argument("--host", default=None, help="Bind host (default: server.host from config)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: server.port from config)")
    serve.add_argument("--log-level", default="info", choices=_LOG_LEVELS, help="Log level (default: info)")

    config = root_sub.add_parser("config", help="Print the merged, validated config as JSON")
    _add_common_flags(config)
    config.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    return parser


def _load(args: argparse.Namespace) -> TasksRuntimeConfig:
    """按 CLI 参数加载配置。"""

    workspace_root = Path(args.workspace_root).expanduser().resolve()
    paths: List[Path] = [Path(p) for p in args.config]
    return load_runtime_config(workspace_root=workspace_root, config_paths=paths)


def _handle_config(args: argparse.Namespace) -> int:
    """输出最终配置 + 生效的审批策略。"""

    try:
        cfg = _load(args)
    except (FileNotFoundError, ValueError, ValidationError) as e:
        _dump_json_to_stdout({"ok": False, "error": {"kind": "config_error", "message": str(e)}}, pretty=args.pretty)
        return 2

    out = {
        "ok": True,
        "config": cfg.model_dump(mode="json"),
        "approval_policy": policy_summary(ApprovalPolicy.from_config(cfg.approvals)),
    }
    _dump_json_to_stdout(out, pretty=args.pretty)
    return 0


def _handle_serve(args: argparse.Namespace) -> int:
    """装配服务并以 uvicorn 启动（阻塞直到退出）。"""

    import uvicorn

    from tasks_runtime.server.app import create_app

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log = logging.getLogger("tasks_runtime.cli")

    try:
        cfg = _load(args)
    except (FileNotFoundError, ValueError, ValidationError) as e:
        log.error("failed to load config: %s", e)
        return 2

    host = args.host or cfg.server.host
    port = int(args.port or cfg.server.port)
    services = build_runtime_services(cfg, workspace_root=Path(args.workspace_root).expanduser().resolve())
    app = create_app(services)
    log.info("serving tasks-runtime on http://%s:%d (a2a: /a2a)", host, port)
    uvicorn.run(app, host=host, port=port, log_level=args.log_level)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # argparse：`--help` 为 0，参数错误为 2
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    if args.command == "config":
        return _handle_config(args)
    if args.command == "serve":
        return _handle_serve(args)
    return 2


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
