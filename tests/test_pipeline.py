from __future__ import annotations

import json
import os
import signal
import subprocess
import sys
from pathlib import Path

import allure

from doyaken.orchestrator.checkpoint import CheckpointStore
from doyaken.orchestrator.controllers import (
    EXIT_ABORTED,
    EXIT_CANCELLED,
    EXIT_OK,
    DoyakenCliController,
    RunCommand,
    RunResult,
)
from doyaken.orchestrator.errors import LockHeld, StorageIOError
from doyaken.orchestrator.locks import LockManager
from doyaken.orchestrator.models import (
    PhaseState,
    PhaseStatus,
    PipelineRun,
    PipelineStatus,
    TaskState,
)
from doyaken.orchestrator.storage import utc_now
from doyaken.orchestrator.tasks import TaskStore

pytestmark = [
    allure.epic("Pipeline State Machine"),
    allure.feature("End-to-End Runs With Echo Agent"),
]

_ALL_PHASES = ["EXPAND", "TRIAGE", "PLAN", "IMPLEMENT", "TEST", "DOCS", "REVIEW", "VERIFY"]


def _run(
    project_dir: Path,
    *,
    sink=None,
    **command,
) -> tuple[RunResult, list[str]]:
    lines: list[str] = []
    controller = DoyakenCliController(progress_sink=sink or lines.append)
    command.setdefault("max_tasks", 1)
    result = controller.run(RunCommand(project_dir=project_dir, **command))
    return result, lines


def _checkpoints(project_dir: Path) -> CheckpointStore:
    return CheckpointStore(project_dir / ".doyaken" / "state" / "runs")


def _skip_all_but(monkeypatch, *keep: str) -> None:
    for phase in _ALL_PHASES:
        if phase not in keep:
            monkeypatch.setenv(f"SKIP_{phase}", "1")


def _saved_run(task_id: str, *, status: PipelineStatus, succeeded: int) -> PipelineRun:
    phases = [
        PhaseState(name=name, status=PhaseStatus.SUCCEEDED, attempts=1, model="opus")
        for name in _ALL_PHASES[:succeeded]
    ]
    phases += [PhaseState(name=name) for name in _ALL_PHASES[succeeded:]]
    return PipelineRun(
        run_id="crashed-run",
        task_id=task_id,
        agent_id="crashed-agent",
        agent="claude",
        model="opus",
        started_at=utc_now(),
        phases=phases,
        status=status,
        current_phase_index=min(succeeded, len(_ALL_PHASES) - 1),
    )


def _dead_pid() -> int:
    process = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    process.wait()
    return process.pid


def test_task_runs_through_all_phases_to_done(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
) -> None:
    task = task_store.create_task("Add login page", priority=2)

    result, lines = _run(project_dir)

    assert result.exit_code == EXIT_OK
    assert f"{task.id}: done" in result.lines
    assert [call[0] for call in echo_calls()] == _ALL_PHASES
    assert {call[2] for call in echo_calls()} == {"opus"}

    done = task_store.find(task.id)
    assert done.state == TaskState.DONE
    assert done.metadata["Completed"]
    assert all(item.checked for item in task_store.acceptance_criteria(task.id))
    assert "- EXPAND: succeeded (1 attempts)" in done.path.read_text("utf-8")
    assert not LockManager(project_dir / ".doyaken" / "locks").path_for(task.id).exists()
    assert _checkpoints(project_dir).load(task.id) is None
    assert any("VERIFY succeeded" in line for line in lines)
    assert lines[-1] == f"[{task.id}] DONE (8/8 phases)"

    logs = project_dir / ".doyaken" / "logs" / task.id
    assert (logs / "implement-attempt1.prompt.md").is_file()
    assert "DOYAKEN_STATUS" in (logs / "verify-attempt1.stdout").read_text("utf-8")

    audit_lines = (project_dir / ".doyaken" / "audit.log").read_text("utf-8").splitlines()
    attempts = [json.loads(line) for line in audit_lines]
    assert sum(1 for record in attempts if record["event"] == "phase_attempt") == 8
    assert attempts[0]["event"] == "pipeline_started"
    assert attempts[-1]["details"]["status"] == "done"


def test_skipped_phases_are_not_invoked(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
    monkeypatch,
) -> None:
    monkeypatch.setenv("SKIP_TRIAGE", "1")
    monkeypatch.setenv("DOYAKEN_SKIP_DOCS", "true")
    task_store.create_task("Skip some", priority=2)

    result, lines = _run(project_dir)

    assert result.exit_code == EXIT_OK
    assert [call[0] for call in echo_calls()] == [
        "EXPAND",
        "PLAN",
        "IMPLEMENT",
        "TEST",
        "REVIEW",
        "VERIFY",
    ]
    assert any("TRIAGE skipped" in line for line in lines)


def test_transient_failure_is_retried_and_logged(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
    monkeypatch,
) -> None:
    monkeypatch.setenv("ECHO_AGENT_PLAN", "IMPLEMENT=fail")
    task = task_store.create_task("Flaky", priority=2)

    result, lines = _run(project_dir)

    assert result.exit_code == EXIT_OK
    implement = [call for call in echo_calls() if call[0] == "IMPLEMENT"]
    assert [call[3] for call in implement] == ["fail", "ok"]
    assert any("IMPLEMENT attempt 1 failed (non_zero_exit)" in line for line in lines)
    text = task_store.find(task.id).path.read_text("utf-8")
    assert "IMPLEMENT succeeded after 1 retries" in text
    prompt = project_dir / ".doyaken" / "logs" / task.id / "implement-attempt2.prompt.md"
    assert "## Previous attempt failed" in prompt.read_text("utf-8")


def test_rate_limit_downgrades_model_for_rest_of_run(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
    monkeypatch,
) -> None:
    monkeypatch.setenv("ECHO_AGENT_PLAN", "PLAN=rate_limit")
    task_store.create_task("Busy provider", priority=2)

    result, lines = _run(project_dir)

    assert result.exit_code == EXIT_OK
    models = {(phase, attempt): model for phase, attempt, model, _ in echo_calls()}
    assert models[("EXPAND", 1)] == "opus"
    assert models[("PLAN", 1)] == "opus"
    assert models[("PLAN", 2)] == "sonnet"
    assert models[("IMPLEMENT", 1)] == "sonnet"
    assert models[("VERIFY", 1)] == "sonnet"
    assert any("model opus -> sonnet" in line for line in lines)


def test_rate_limit_at_lowest_tier_aborts(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
    monkeypatch,
) -> None:
    monkeypatch.setenv("ECHO_AGENT_PLAN", "EXPAND=rate_limit,rate_limit")
    task = task_store.create_task("Provider down", priority=2)

    result, _ = _run(project_dir)

    assert result.exit_code == EXIT_ABORTED
    assert [call[2] for call in echo_calls()] == ["opus", "sonnet"]
    assert task_store.find(task.id).state == TaskState.TODO


def test_abort_returns_task_to_todo_and_resume_skips_succeeded_phases(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
    monkeypatch,
) -> None:
    monkeypatch.setenv("ECHO_AGENT_PLAN", "IMPLEMENT=fail,fail,fail")
    task = task_store.create_task("Hard problem", priority=2)

    result, _ = _run(project_dir)

    assert result.exit_code == EXIT_ABORTED
    aborted = task_store.find(task.id)
    assert aborted.state == TaskState.TODO
    assert not aborted.metadata.get("Assigned To")
    assert "Aborted in IMPLEMENT" in aborted.path.read_text("utf-8")
    assert "Reason: non_zero_exit" in aborted.path.read_text("utf-8")
    assert not LockManager(project_dir / ".doyaken" / "locks").path_for(task.id).exists()
    run = _checkpoints(project_dir).load(task.id)
    assert run.status == PipelineStatus.ABORTED
    assert [state.status for state in run.phases[:4]] == [
        PhaseStatus.SUCCEEDED,
        PhaseStatus.SUCCEEDED,
        PhaseStatus.SUCCEEDED,
        PhaseStatus.FAILED,
    ]
    assert run.phase("IMPLEMENT").attempts == 3

    first_run_calls = len(echo_calls())
    result, _ = _run(project_dir)

    assert result.exit_code == EXIT_OK
    resumed = echo_calls()[first_run_calls:]
    assert [call[0] for call in resumed] == ["IMPLEMENT", "TEST", "DOCS", "REVIEW", "VERIFY"]
    assert resumed[0][1] == 4
    assert task_store.find(task.id).state == TaskState.DONE
    prompt = project_dir / ".doyaken" / "logs" / task.id / "implement-attempt4.prompt.md"
    assert "## Previous attempt failed" in prompt.read_text("utf-8")


def test_malformed_output_twice_aborts(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
    monkeypatch,
) -> None:
    _skip_all_but(monkeypatch, "TEST", "VERIFY")
    monkeypatch.setenv("ECHO_AGENT_PLAN", "TEST=no_status,incomplete")
    task = task_store.create_task("Chatty agent", priority=2)

    result, _ = _run(project_dir)

    assert result.exit_code == EXIT_ABORTED
    assert any("malformed_output" in line for line in result.lines)
    assert [call[0] for call in echo_calls()] == ["TEST", "TEST"]
    assert task_store.find(task.id).state == TaskState.TODO


def test_unchecked_acceptance_criteria_abort_then_verify_reruns(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
    monkeypatch,
) -> None:
    _skip_all_but(monkeypatch, "IMPLEMENT", "VERIFY")
    monkeypatch.setenv("ECHO_AGENT_PLAN", "VERIFY=leave_unchecked")
    task = task_store.create_task("Needs proof", priority=2)

    result, _ = _run(project_dir)

    assert result.exit_code == EXIT_ABORTED
    assert any("acceptance criteria unchecked" in line for line in result.lines)
    assert task_store.find(task.id).state == TaskState.TODO
    run = _checkpoints(project_dir).load(task.id)
    assert run.phase("IMPLEMENT").status == PhaseStatus.SUCCEEDED
    assert run.phase("VERIFY").status == PhaseStatus.FAILED

    result, _ = _run(project_dir)

    assert result.exit_code == EXIT_OK
    assert [call[0] for call in echo_calls()] == ["IMPLEMENT", "VERIFY", "VERIFY"]
    assert task_store.find(task.id).state == TaskState.DONE


def test_quality_gate_failure_is_retried(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
    monkeypatch,
) -> None:
    _skip_all_but(monkeypatch, "TEST", "VERIFY")
    script = (
        "import pathlib, sys; marker = pathlib.Path('gate-ran'); "
        "seen = marker.exists(); marker.touch(); "
        "print('ok' if seen else 'FAILED test_login'); sys.exit(0 if seen else 1)"
    )
    monkeypatch.setenv("QUALITY_TEST_CMD", f'{sys.executable} -c "{script}"')
    task = task_store.create_task("Gated", priority=2)

    result, lines = _run(project_dir)

    assert result.exit_code == EXIT_OK
    assert [call[0] for call in echo_calls()] == ["TEST", "TEST", "VERIFY"]
    assert any("(quality_gate_failed)" in line for line in lines)
    prompt = project_dir / ".doyaken" / "logs" / task.id / "test-attempt2.prompt.md"
    assert "FAILED test_login" in prompt.read_text("utf-8")


def test_signal_cancels_run_and_keeps_checkpoint(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
) -> None:
    task = task_store.create_task("Interrupted", priority=2)
    lines: list[str] = []

    def sink(line: str) -> None:
        lines.append(line)
        if "EXPAND succeeded" in line:
            os.kill(os.getpid(), signal.SIGINT)

    result, _ = _run(project_dir, sink=sink)

    assert result.exit_code == EXIT_CANCELLED
    assert [call[0] for call in echo_calls()] == ["EXPAND"]
    cancelled = task_store.find(task.id)
    assert cancelled.state == TaskState.TODO
    assert "Cancelled during TRIAGE" in cancelled.path.read_text("utf-8")
    run = _checkpoints(project_dir).load(task.id)
    assert run.status == PipelineStatus.CANCELLED
    assert run.phase("EXPAND").status == PhaseStatus.SUCCEEDED
    assert run.phase("TRIAGE").status == PhaseStatus.ABORTED
    assert lines[-1].startswith(f"[{task.id}] CANCELLED (1/8 phases)")


def test_worker_picks_tasks_by_priority_and_respects_blockers(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
    monkeypatch,
) -> None:
    _skip_all_but(monkeypatch, "VERIFY")
    later = task_store.create_task("later", priority=3)
    first = task_store.create_task("first", priority=1)
    dependency = task_store.create_task("dependency", priority=4)
    blocked = task_store.create_task("blocked", priority=2)
    task_store.update_metadata(blocked.id, {"Blocked By": dependency.id})

    result, _ = _run(project_dir, max_tasks=4)

    assert result.exit_code == EXIT_OK
    assert [line.split(":")[0] for line in result.lines[:-1]] == [
        first.id,
        later.id,
        dependency.id,
        blocked.id,
    ]
    assert "processed=4 succeeded=4" in result.lines[-1]
    assert len(echo_calls()) == 4


def test_task_locked_by_live_agent_is_skipped(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
) -> None:
    task = task_store.create_task("Owned elsewhere", priority=2)
    LockManager(project_dir / ".doyaken" / "locks").acquire(task.id, "other-agent")

    result, _ = _run(project_dir)
    assert result.lines == ["No runnable tasks."]

    result, lines = _run(project_dir, task_id=task.id)

    assert result.exit_code == EXIT_OK
    assert "skipped_locked=1" in result.lines[-1]
    assert any("skipped" in line and "other-agent" in line for line in lines)
    assert echo_calls() == []
    assert task_store.find(task.id).state == TaskState.TODO


def test_dry_run_plans_without_claiming(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
    monkeypatch,
) -> None:
    monkeypatch.setenv("SKIP_DOCS", "1")
    task = task_store.create_task("Preview", priority=2)

    result, _ = _run(project_dir, dry_run=True)

    assert result.exit_code == EXIT_OK
    assert result.lines[0] == "Dry run: no agents will be invoked."
    assert result.lines[1].startswith(f"{task.id} [todo]")
    docs = next(line for line in result.lines if line.strip().startswith("DOCS"))
    assert "skip" in docs
    assert echo_calls() == []
    assert task_store.find(task.id).state == TaskState.TODO


def test_done_checkpoint_finishes_release_without_rerunning_phases(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
) -> None:
    task = task_store.create_task("Crashed while releasing", priority=2)
    claimed = task_store.claim(task.id, "test-agent")
    text = claimed.path.read_text("utf-8").replace("- [ ]", "- [x]")
    claimed.path.write_text(text, "utf-8")
    _checkpoints(project_dir).save(
        _saved_run(task.id, status=PipelineStatus.DONE, succeeded=len(_ALL_PHASES)),
    )
    task_store.locks.release(task.id)

    result, lines = _run(project_dir)

    assert result.exit_code == EXIT_OK
    assert echo_calls() == []
    assert task_store.find(task.id).state == TaskState.DONE
    assert _checkpoints(project_dir).load(task.id) is None
    assert lines[-1] == f"[{task.id}] DONE (8/8 phases)"


def test_orphaned_doing_task_with_dead_owner_resumes_mid_phase(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
) -> None:
    task = task_store.create_task("Owner crashed", priority=2)
    task_store.claim(task.id, "crashed-agent")
    lock_path = task_store.locks.path_for(task.id)
    payload = json.loads(lock_path.read_text("utf-8"))
    payload["pid"] = _dead_pid()
    lock_path.write_text(json.dumps(payload), "utf-8")
    run = _saved_run(task.id, status=PipelineStatus.RUNNING, succeeded=3)
    run.phase("IMPLEMENT").status = PhaseStatus.RUNNING
    run.phase("IMPLEMENT").attempts = 1
    _checkpoints(project_dir).save(run)

    result, _ = _run(project_dir)

    assert result.exit_code == EXIT_OK
    calls = echo_calls()
    assert [call[0] for call in calls] == ["IMPLEMENT", "TEST", "DOCS", "REVIEW", "VERIFY"]
    assert calls[0][1] == 2
    done = task_store.find(task.id)
    assert done.state == TaskState.DONE
    assert not task_store.locks.path_for(task.id).exists()


def test_checkpoint_write_failure_aborts_with_work_log_entry(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
    monkeypatch,
) -> None:
    original_save = CheckpointStore.save

    def save(self, run: PipelineRun) -> None:
        if run.phase("EXPAND").status == PhaseStatus.SUCCEEDED:
            raise StorageIOError("disk full")
        original_save(self, run)

    monkeypatch.setattr(CheckpointStore, "save", save)
    task = task_store.create_task("Full disk", priority=2)

    result, _ = _run(project_dir)

    assert result.exit_code == EXIT_ABORTED
    assert [call[0] for call in echo_calls()] == ["EXPAND"]
    aborted = task_store.find(task.id)
    assert aborted.state == TaskState.TODO
    text = aborted.path.read_text("utf-8")
    assert "Aborted: storage failure" in text
    assert "disk full" in text


def test_lock_heartbeat_refreshes_during_long_agent_run(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
    monkeypatch,
) -> None:
    _skip_all_but(monkeypatch, "IMPLEMENT", "VERIFY")
    monkeypatch.setenv("ECHO_AGENT_PLAN", "IMPLEMENT=slow")
    monkeypatch.setenv("ECHO_AGENT_SLEEP_SECONDS", "1.2")
    monkeypatch.setenv("AGENT_HEARTBEAT", "0.2")
    refreshes: list[str] = []
    original_refresh = LockManager.refresh

    def refresh(self, task_id: str, agent_id: str):
        refreshes.append(task_id)
        return original_refresh(self, task_id, agent_id)

    monkeypatch.setattr(LockManager, "refresh", refresh)
    task = task_store.create_task("Long implementation", priority=2)

    result, _ = _run(project_dir)

    assert result.exit_code == EXIT_OK
    assert [call[0] for call in echo_calls()] == ["IMPLEMENT", "VERIFY"]
    # One refresh before each attempt, the rest from the heartbeat.
    assert len(refreshes) >= 4
    assert set(refreshes) == {task.id}


def test_lost_lock_during_agent_run_stops_agent_and_keeps_task(
    project_dir: Path,
    task_store: TaskStore,
    echo_calls,
    monkeypatch,
) -> None:
    _skip_all_but(monkeypatch, "IMPLEMENT")
    monkeypatch.setenv("ECHO_AGENT_PLAN", "IMPLEMENT=slow")
    monkeypatch.setenv("ECHO_AGENT_SLEEP_SECONDS", "30")
    monkeypatch.setenv("AGENT_HEARTBEAT", "0.2")
    original_refresh = LockManager.refresh
    calls = {"count": 0}

    def refresh(self, task_id: str, agent_id: str):
        calls["count"] += 1
        if calls["count"] > 1:
            raise LockHeld(task_id, "other-agent")
        return original_refresh(self, task_id, agent_id)

    monkeypatch.setattr(LockManager, "refresh", refresh)
    task = task_store.create_task("Stolen", priority=2)

    result, _ = _run(project_dir)

    assert result.exit_code == EXIT_ABORTED
    assert "locked by other-agent" in result.lines[0]
    assert [call[0] for call in echo_calls()] == ["IMPLEMENT"]
    assert task_store.find(task.id).state == TaskState.DOING
