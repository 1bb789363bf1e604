from __future__ import annotations

import ast
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

_SKIP_DIRS = {".git", "__pycache__", ".pytest_cache", ".mypy_cache", "dist", "build", ".venv", "venv"}


@dataclass(frozen=True)
class Finding:
    path: Path
    lineno: int
    what: str


def _src_root() -> Path:
    return Path(__file__).resolve().parents[1] / "packages" / "tasks-runtime-python" / "src"


def _iter_sources(root: Path) -> Iterable[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in _SKIP_DIRS]
        for filename in sorted(filenames):
            if filename.endswith(".py"):
                yield Path(dirpath) / filename


def _parse(py_path: Path) -> ast.Module:
    return ast.parse(py_path.read_text(encoding="utf-8"), filename=str(py_path))


def _missing_docstrings(py_path: Path) -> list[Finding]:
    tree = _parse(py_path)
    out: list[Finding] = []

    # 空的 `__init__.py`（例如 assets 包标记）不要求模块 docstring
    if tree.body and ast.get_docstring(tree) is None:
        out.append(Finding(py_path, 1, "<module>"))

    def _walk(node: ast.AST, prefix: str) -> None:
        for child in ast.iter_child_nodes(node):
            if isinstance(child, (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef)):
                qualname = f"{prefix}{child.name}"
                if ast.get_docstring(child) is None:
                    out.append(Finding(py_path, child.lineno, qualname))
                _walk(child, qualname + ".")
            else:
                _walk(child, prefix)

    _walk(tree, "")
    return out


def _bare_excepts(py_path: Path) -> list[Finding]:
    return [
        Finding(py_path, node.lineno, "bare except")
        for node in ast.walk(_parse(py_path))
        if isinstance(node, ast.ExceptHandler) and node.type is None
    ]


def _report(title: str, findings: list[Finding]) -> str:
    root = _src_root()
    lines = [title]
    for f in sorted(findings, key=lambda x: (str(x.path), x.lineno)):
        lines.append(f"- {f.path.relative_to(root)}:{f.lineno} {f.what}")
    return "\n".join(lines)


def test_docstrings_present_for_all_defs_under_src() -> None:
    """
    Docstring 护栏：src 下每个模块与 `class/def/async def`（含嵌套定义）都必须有 docstring。
    """

    findings: list[Finding] = []
    for py_path in _iter_sources(_src_root()):
        findings.extend(_missing_docstrings(py_path))
    assert not findings, _report("missing docstrings:", findings)


def test_no_bare_except_under_src() -> None:
    """异常必须显式捕获具体类型（`except Exception` 需要有意为之）。"""

    findings: list[Finding] = []
    for py_path in _iter_sources(_src_root()):
        findings.extend(_bare_excepts(py_path))
    assert not findings, _report("bare except clauses:", findings)
