from __future__ import annotations

from pathlib import Path

import allure
from click.testing import CliRunner

from doyaken.main import doyaken
from doyaken.orchestrator.models import TaskState
from doyaken.orchestrator.tasks import TaskStore

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Commands & Exit Codes"),
]


def test_run_exits_zero_when_task_is_done(
    project_dir: Path,
    task_store: TaskStore,
    echo_agent: Path,
) -> None:
    task = task_store.create_task("CLI happy path", priority=2)

    result = CliRunner().invoke(doyaken, ["run", "--project", str(project_dir)])

    assert result.exit_code == 0, result.output
    assert f"[{task.id}] DONE (8/8 phases)" in result.output
    assert "Run summary: processed=1 succeeded=1" in result.output
    assert task_store.find(task.id).state == TaskState.DONE


def test_run_exits_one_when_task_aborts(
    project_dir: Path,
    task_store: TaskStore,
    echo_agent: Path,
    monkeypatch,
) -> None:
    monkeypatch.setenv("ECHO_AGENT_PLAN", "EXPAND=fail,fail,fail")
    task = task_store.create_task("CLI failing path", priority=2)

    result = CliRunner().invoke(doyaken, ["run", "--quiet", "--project", str(project_dir)])

    assert result.exit_code == 1, result.output
    assert "EXPAND attempt" not in result.output
    assert f"[{task.id}] ABORTED (0/8 phases)" in result.output
    assert task_store.find(task.id).state == TaskState.TODO


def test_run_with_nothing_to_do(project_dir: Path, echo_agent: Path) -> None:
    result = CliRunner().invoke(doyaken, ["run", "3", "--project", str(project_dir)])

    assert result.exit_code == 0, result.output
    assert "No runnable tasks." in result.output


def test_run_rejects_quiet_and_verbose_together(project_dir: Path) -> None:
    result = CliRunner().invoke(
        doyaken,
        ["run", "--quiet", "--verbose", "--project", str(project_dir)],
    )

    assert result.exit_code == 2
    assert "mutually exclusive" in result.output


def test_run_reports_invalid_config(project_dir: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_MAX_RETRIES", "0")

    result = CliRunner().invoke(doyaken, ["run", "--project", str(project_dir)])

    assert result.exit_code == 1
    assert "AGENT_MAX_RETRIES must be >= 1" in result.output


def test_dry_run_lists_plan(project_dir: Path, task_store: TaskStore, echo_agent: Path) -> None:
    task = task_store.create_task("Preview me", priority=1)

    result = CliRunner().invoke(doyaken, ["run", "--dry-run", "--project", str(project_dir)])

    assert result.exit_code == 0, result.output
    assert "Dry run: no agents will be invoked." in result.output
    assert f"{task.id} [todo] Preview me" in result.output
    assert not echo_agent.exists()


def test_task_command_creates_and_runs(project_dir: Path, echo_agent: Path) -> None:
    result = CliRunner().invoke(
        doyaken,
        ["task", "Fix the flaky login test", "--priority", "1", "--project", str(project_dir)],
    )

    assert result.exit_code == 0, result.output
    assert "Created task: 001-" in result.output
    assert "-fix-the-flaky-login-test" in result.output
    assert "DONE (8/8 phases)" in result.output


def test_task_command_no_run_only_creates(project_dir: Path) -> None:
    result = CliRunner().invoke(
        doyaken,
        ["task", "Write docs", "--no-run", "--project", str(project_dir)],
    )

    assert result.exit_code == 0, result.output
    assert "Created task: 002-" in result.output
    store_dir = project_dir / ".doyaken" / "tasks" / "2.todo"
    assert len(list(store_dir.glob("002-*-write-docs.md"))) == 1


def test_tasks_lists_states_and_blockers(project_dir: Path, task_store: TaskStore) -> None:
    dependency = task_store.create_task("Schema", priority=2)
    blocked = task_store.create_task("API", priority=3)
    task_store.update_metadata(blocked.id, {"Blocked By": dependency.id})

    result = CliRunner().invoke(doyaken, ["tasks", "--project", str(project_dir)])

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0].startswith(dependency.id)
    assert f"(blocked by {dependency.id})" in lines[1]

    empty = CliRunner().invoke(
        doyaken,
        ["tasks", "--state", "done", "--project", str(project_dir)],
    )
    assert empty.output.strip() == "No tasks."


def test_status_shows_counts_and_locks(project_dir: Path, task_store: TaskStore) -> None:
    task = task_store.create_task("Locked", priority=2)
    task_store.claim(task.id, "agent-x")

    result = CliRunner().invoke(doyaken, ["status", "--project", str(project_dir)])

    assert result.exit_code == 0, result.output
    assert "Tasks: todo=0 doing=1 done=0" in result.output
    assert "Locks: 1" in result.output
    assert f"{task.id} agent=agent-x" in result.output
    assert "Checkpoints: 0" in result.output


def test_release_command_refuses_live_foreign_lock_without_force(
    project_dir: Path,
    task_store: TaskStore,
) -> None:
    task = task_store.create_task("Stuck", priority=2)
    task_store.claim(task.id, "other-agent")
    runner = CliRunner()

    refused = runner.invoke(
        doyaken,
        ["release", "--task-id", task.id, "--project", str(project_dir)],
    )

    assert refused.exit_code == 1
    assert "locked by other-agent" in refused.output
    assert task_store.find(task.id).state == TaskState.DOING

    result = runner.invoke(
        doyaken,
        ["release", "--task-id", task.id, "--force", "--project", str(project_dir)],
    )

    assert result.exit_code == 0, result.output
    assert f"Task {task.id} is now todo." in result.output
    assert task_store.find(task.id).state == TaskState.TODO
    assert task_store.locks.read(task.id) is None


def test_audit_and_config_commands(
    project_dir: Path,
    task_store: TaskStore,
    echo_agent: Path,
) -> None:
    runner = CliRunner()
    empty = runner.invoke(doyaken, ["audit", "--project", str(project_dir)])
    assert "Audit log is empty." in empty.output

    task_store.create_task("Audited", priority=2)
    runner.invoke(doyaken, ["run", "--project", str(project_dir)])
    result = runner.invoke(doyaken, ["audit", "--last", "2", "--project", str(project_dir)])

    assert result.exit_code == 0, result.output
    lines = result.output.strip().splitlines()
    assert len(lines) == 2
    assert "phase_attempt" in lines[0]
    assert "pipeline_finished" in lines[1]

    config = runner.invoke(doyaken, ["config", "--project", str(project_dir)])
    assert config.exit_code == 0, config.output
    assert "agent: claude" in config.output
    assert "agent_id: test-agent" in config.output


def test_version_option() -> None:
    result = CliRunner().invoke(doyaken, ["--version"])

    assert result.exit_code == 0
    assert "doyaken" in result.output


def test_release_success_refused_while_criteria_unchecked(
    project_dir: Path,
    task_store: TaskStore,
) -> None:
    task = task_store.create_task("Not verified", priority=2)
    task_store.claim(task.id, "test-agent")

    result = CliRunner().invoke(
        doyaken,
        ["release", "--task-id", task.id, "--outcome", "success", "--project", str(project_dir)],
    )

    assert result.exit_code == 1
    assert "unchecked acceptance criteria" in result.output
    assert task_store.find(task.id).state == TaskState.DOING


def test_run_fails_fast_when_agent_command_is_missing(
    project_dir: Path,
    task_store: TaskStore,
    monkeypatch,
) -> None:
    monkeypatch.setenv("DOYAKEN_AGENT_COMMAND", "doyaken-no-such-agent --prompt {prompt}")
    task = task_store.create_task("Never started", priority=2)

    result = CliRunner().invoke(doyaken, ["run", "--project", str(project_dir)])

    assert result.exit_code == 1
    assert "Agent command not found: doyaken-no-such-agent" in result.output
    assert task_store.find(task.id).state == TaskState.TODO
    assert task_store.locks.read(task.id) is None
