"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from doyaken.orchestrator.locks import LockManager
from doyaken.orchestrator.tasks import TaskStore

_SRC_DIR = Path(__file__).resolve().parents[1] / "src"
_ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m doyaken.orchestrator.backend.echo_agent "
    "--model {model} --prompt-file {prompt_file}"
)
_ISOLATED_PREFIXES = (
    "DOYAKEN_",
    "AGENT_",
    "TIMEOUT_",
    "SKIP_",
    "QUALITY_",
    "ECHO_AGENT_",
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch) -> Path:
    """Drop doyaken settings inherited from the shell and point HOME config at tmp."""

    for name in list(os.environ):
        if name.startswith(_ISOLATED_PREFIXES):
            monkeypatch.delenv(name, raising=False)
    home = tmp_path / "doyaken-home"
    monkeypatch.setenv("DOYAKEN_HOME", str(home))
    monkeypatch.setenv("DOYAKEN_AGENT_ID", "test-agent")
    return home


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    (path / ".doyaken").mkdir(parents=True)
    return path


@pytest.fixture()
def task_store(project_dir: Path) -> TaskStore:
    data_dir = project_dir / ".doyaken"
    store = TaskStore(data_dir / "tasks", LockManager(data_dir / "locks"))
    store.ensure_layout()
    return store


@pytest.fixture()
def echo_agent(monkeypatch, tmp_path: Path) -> Path:
    """Drive phases with the scripted echo agent; returns its call log path."""

    log_path = tmp_path / "echo-agent.log"
    pythonpath = os.environ.get("PYTHONPATH", "")
    monkeypatch.setenv("DOYAKEN_AGENT_COMMAND", _ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("DOYAKEN_RETRY_DELAY", "0")
    monkeypatch.setenv("ECHO_AGENT_LOG", str(log_path))
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join(part for part in (str(_SRC_DIR), pythonpath) if part),
    )
    return log_path


@pytest.fixture()
def echo_calls(echo_agent: Path):
    """Callable returning parsed ``(phase, attempt, model, action)`` echo agent calls."""

    def _read() -> list[tuple[str, int, str, str]]:
        if not echo_agent.is_file():
            return []
        calls = []
        for line in echo_agent.read_text("utf-8").splitlines():
            phase, attempt, model, action = line.split(" ")
            calls.append((phase, int(attempt), model, action))
        return calls

    return _read
