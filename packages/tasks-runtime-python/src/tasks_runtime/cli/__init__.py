"""
CLI 模块。

说明：
- 对外入口为 `tasks-runtime ...`（由 `pyproject.toml` 的 `[project.scripts]` 注册）；
- CLI 只做“配置加载 + 装配服务 + 启动 server / 输出 JSON”，不复制核心逻辑。
"""
