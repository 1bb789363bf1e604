from __future__ import annotations

import json
from pathlib import Path

import pytest

from tasks_runtime.bootstrap import CONFIG_PATHS_ENV, LLM_BASE_URL_ENV, LLM_MODEL_ENV
from tasks_runtime.cli.main import main


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (CONFIG_PATHS_ENV, LLM_BASE_URL_ENV, LLM_MODEL_ENV):
        monkeypatch.delenv(key, raising=False)


def test_config_prints_merged_config(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = main(["config", "--workspace-root", str(tmp_path)])
    assert code == 0

    out = json.loads(capsys.readouterr().out)
    assert out["ok"] is True
    assert out["config"]["server"]["port"] == 8080
    assert out["config"]["approvals"]["preset"] == "default"
    assert out["approval_policy"]["timeout_sec"] == 300.0
    assert out["approval_policy"]["tool_rules"]["Bash"] == "require_approval"


def test_config_applies_overlays_and_env(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "tasks_runtime.yaml").write_text(
        "server:\n  port: 9100\napprovals:\n  preset: strict\n",
        encoding="utf-8",
    )
    extra = tmp_path / "extra.yaml"
    extra.write_text("run:\n  max_concurrent_tasks: 2\n", encoding="utf-8")
    monkeypatch.setenv(LLM_MODEL_ENV, "model-from-env")

    code = main(["config", "--workspace-root", str(tmp_path), "--config", str(extra), "--pretty"])
    assert code == 0

    text = capsys.readouterr().out
    assert "\n  " in text
    out = json.loads(text)
    assert out["config"]["server"]["port"] == 9100
    assert out["config"]["run"]["max_concurrent_tasks"] == 2
    assert out["config"]["llm"]["model"] == "model-from-env"
    assert out["approval_policy"]["timeout_sec"] == 120.0


def test_config_error_is_reported_as_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text("server:\n  prot: 1\n", encoding="utf-8")

    code = main(["config", "--workspace-root", str(tmp_path), "--config", str(bad)])
    assert code == 2
    out = json.loads(capsys.readouterr().out)
    assert out["ok"] is False
    assert out["error"]["kind"] == "config_error"


def test_missing_overlay_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = main(["config", "--workspace-root", str(tmp_path), "--config", str(tmp_path / "nope.yaml")])
    assert code == 2
    assert "not found" in json.loads(capsys.readouterr().out)["error"]["message"]


def test_argparse_exit_codes(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--help"]) == 0
    assert main([]) == 2
    assert main(["serve", "--log-level", "loud"]) == 2
    capsys.readouterr()


def test_serve_uses_config_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import uvicorn

    seen = {}

    def _fake_run(app, *, host, port, log_level):
        seen.update(app=app, host=host, port=port, log_level=log_level)

    monkeypatch.setattr(uvicorn, "run", _fake_run)
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "tasks_runtime.yaml").write_text(
        "server:\n  port: 9200\nllm:\n  provider: fake\n",
        encoding="utf-8",
    )

    code = main(["serve", "--workspace-root", str(tmp_path), "--host", "0.0.0.0", "--log-level", "warning"])
    assert code == 0
    assert seen["host"] == "0.0.0.0"
    assert seen["port"] == 9200
    assert seen["log_level"] == "warning"
    assert seen["app"].title == "tasks-runtime"
