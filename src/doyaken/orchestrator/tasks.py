"""Markdown task files grouped into lifecycle directories."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from doyaken.orchestrator.errors import (
    AcceptanceCriteriaUnmet,
    AlreadyClaimed,
    LockHeld,
    StorageIOError,
    TaskNotFound,
    TaskStateConflict,
)
from doyaken.orchestrator.locks import LockManager
from doyaken.orchestrator.models import (
    AcceptanceCriterion,
    ReleaseOutcome,
    TaskDescriptor,
    TaskId,
    TaskState,
)
from doyaken.orchestrator.storage import utc_now, write_text_atomic

logger = logging.getLogger(__name__)

STATE_DIRECTORIES: dict[TaskState, tuple[str, str]] = {
    TaskState.TODO: ("2.todo", "todo"),
    TaskState.DOING: ("3.doing", "doing"),
    TaskState.DONE: ("4.done", "done"),
}
PRIORITY_LABELS = {1: "Critical", 2: "High", 3: "Medium", 4: "Low"}
METADATA_FIELDS = (
    "ID",
    "Status",
    "Priority",
    "Created",
    "Started",
    "Completed",
    "Blocked By",
    "Blocks",
    "Assigned To",
    "Assigned At",
)
DEFAULT_ACCEPTANCE_CRITERIA = (
    "Tests written and passing",
    "Quality gates pass",
    "Changes committed with task reference",
)

_TASK_REF_PATTERN = re.compile(r"\d{3}-\d+-[A-Za-z0-9][A-Za-z0-9_-]*")
_CRITERION_PATTERN = re.compile(r"^\s*[-*]\s+\[(?P<mark>[ xX])\]\s+(?P<text>.*\S)\s*$")
_EMPTY_CELL_VALUES = {"", "-", "none", "n/a"}


class TaskStore:
    """Read, move and rewrite task files under ``.doyaken/tasks``.

    The directory a task file lives in is its state.  Moves between states
    use ``os.rename`` and every content rewrite goes through a temp file, so
    a crash never leaves a half-written task behind.
    """

    def __init__(
        self,
        tasks_dir: Path,
        locks: LockManager,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.tasks_dir = tasks_dir
        self.locks = locks
        self._clock = clock

    def ensure_layout(self) -> None:
        try:
            for state in TaskState:
                self.state_dir(state).mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise StorageIOError(
                f"Cannot create task dirs in {self.tasks_dir}: {error}",
            ) from error

    def state_dir(self, state: TaskState) -> Path:
        """Numbered directory, or the legacy name when only that one exists."""

        numbered, legacy = STATE_DIRECTORIES[state]
        numbered_path = self.tasks_dir / numbered
        legacy_path = self.tasks_dir / legacy
        if not numbered_path.is_dir() and legacy_path.is_dir():
            return legacy_path
        return numbered_path

    def list_tasks(self, state: TaskState) -> list[TaskDescriptor]:
        """Tasks in ``state`` ordered by priority, then sequence."""

        directory = self.state_dir(state)
        if not directory.is_dir():
            return []
        tasks: list[TaskDescriptor] = []
        for path in directory.glob("*.md"):
            if path.name.startswith("_") or not path.is_file():
                continue
            task = self._load(path, state)
            if task is not None:
                tasks.append(task)
        tasks.sort(key=lambda item: item.task_id.sort_key)
        return tasks

    def locate(self, task_id: str) -> TaskDescriptor | None:
        for state in (TaskState.DOING, TaskState.TODO, TaskState.DONE):
            path = self.state_dir(state) / f"{task_id}.md"
            if path.is_file():
                return self._load(path, state)
        return None

    def find(self, task_id: str) -> TaskDescriptor:
        task = self.locate(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def counts(self) -> dict[TaskState, int]:
        return {state: len(self.list_tasks(state)) for state in TaskState}

    def is_unblocked(self, task: TaskDescriptor) -> bool:
        """True when every blocked-by task is done."""

        for dependency in task.blocked_by:
            found = self.locate(dependency)
            if found is None:
                logger.warning(
                    "Task %s is blocked by unknown task %s; ignoring",
                    task.id,
                    dependency,
                )
                continue
            if found.state != TaskState.DONE:
                return False
        return True

    def claim(self, task_id: str, agent_id: str) -> TaskDescriptor:
        """Lock the task, move it to doing and stamp the assignment.

        A task already in doing is resumed (own lock) or taken over (no lock
        or stale lock).  Any failure after the lock was taken undoes the move
        and drops the lock.
        """

        task = self.find(task_id)
        if task.state == TaskState.DONE:
            raise TaskStateConflict(f"Task {task_id} is already done")
        try:
            self.locks.acquire(task_id, agent_id)
        except LockHeld as error:
            raise AlreadyClaimed(task_id, error.owner) from error

        moved_from: Path | None = None
        try:
            task = self.find(task_id)
            if task.state == TaskState.DONE:
                raise TaskStateConflict(f"Task {task_id} is already done")
            if task.state == TaskState.TODO:
                target = self.state_dir(TaskState.DOING) / task.path.name
                self._move(task.path, target)
                moved_from = task.path
                task = replace(task, state=TaskState.DOING, path=target)
            stamp = self._stamp()
            updates = {"Status": "doing", "Assigned To": agent_id, "Assigned At": stamp}
            if not task.metadata.get("Started"):
                updates["Started"] = stamp
            self._rewrite_metadata(task.path, updates)
        except Exception:
            if moved_from is not None:
                self._rollback_move(task.path, moved_from)
            self.locks.release(task_id, agent_id)
            raise
        logger.info("Claimed task %s for %s", task_id, agent_id)
        return self.find(task_id)

    def release(
        self,
        task_id: str,
        outcome: ReleaseOutcome,
        agent_id: str | None = None,
    ) -> TaskDescriptor | None:
        """Move a doing task to done (success) or back to todo.

        Releasing a task that is not in doing only drops a leftover lock.
        A success release is refused while any acceptance criterion is
        unchecked.
        """

        task = self.locate(task_id)
        if task is None or task.state != TaskState.DOING:
            self.locks.release(task_id, agent_id)
            logger.debug("Task %s already released", task_id)
            return task

        if agent_id is not None:
            owner = self.locks.read(task_id)
            if owner is not None and owner.agent_id != agent_id and not self.locks.is_stale(owner):
                raise LockHeld(task_id, owner.agent_id)
        if outcome == ReleaseOutcome.SUCCESS:
            unchecked = [item.text for item in self._criteria(task.path) if not item.checked]
            if unchecked:
                raise AcceptanceCriteriaUnmet(task_id, unchecked)

        target_state = TaskState.DONE if outcome == ReleaseOutcome.SUCCESS else TaskState.TODO
        target = self.state_dir(target_state) / task.path.name
        self._move(task.path, target)
        updates = {"Status": target_state.value, "Assigned To": "", "Assigned At": ""}
        if outcome == ReleaseOutcome.SUCCESS:
            updates["Completed"] = self._stamp()
        self._rewrite_metadata(target, updates)
        self.locks.release(task_id, agent_id)
        logger.info("Released task %s as %s", task_id, outcome.value)
        return self._load(target, target_state)

    def update_metadata(self, task_id: str, updates: dict[str, str]) -> None:
        self._rewrite_metadata(self.find(task_id).path, updates)

    def append_work_log(self, task_id: str, title: str, lines: Iterable[str] = ()) -> None:
        """Add a timestamped ``### YYYY-MM-DD HH:MM - title`` entry."""

        task = self.find(task_id)
        text = self._read(task.path)
        entry = [f"### {self._stamp()} - {title}"]
        body = [_as_bullet(line) for line in lines]
        if body:
            entry.append("")
            entry.extend(body)
        write_text_atomic(task.path, _append_to_section(text, "Work Log", entry))

    def acceptance_criteria(self, task_id: str) -> list[AcceptanceCriterion]:
        return self._criteria(self.find(task_id).path)

    def read_text(self, task_id: str) -> str:
        return self._read(self.find(task_id).path)

    def next_sequence(self, priority: int) -> int:
        highest = 0
        for state in TaskState:
            for task in self.list_tasks(state):
                if task.priority == priority:
                    highest = max(highest, task.task_id.sequence)
        return highest + 1

    def create_task(  # noqa: PLR0913
        self,
        title: str,
        *,
        priority: int = 3,
        context: str = "",
        criteria: Iterable[str] = DEFAULT_ACCEPTANCE_CRITERIA,
        sequence: int | None = None,
        slug: str | None = None,
    ) -> TaskDescriptor:
        """Write a new task file into todo and return its descriptor."""

        if priority not in PRIORITY_LABELS:
            raise ValueError(f"Priority must be one of {sorted(PRIORITY_LABELS)}")
        self.ensure_layout()
        resolved_sequence = sequence if sequence is not None else self.next_sequence(priority)
        task_id = f"{priority:03d}-{resolved_sequence:03d}-{slug or slugify(title)}"
        if TaskId.parse(task_id) is None:
            raise ValueError(f"Cannot build a valid task id from {title!r}")
        if self.locate(task_id) is not None:
            raise TaskStateConflict(f"Task {task_id} already exists")

        path = self.state_dir(TaskState.TODO) / f"{task_id}.md"
        write_text_atomic(
            path,
            render_task(
                task_id=task_id,
                title=title,
                priority=priority,
                created=self._stamp(),
                context=context,
                criteria=criteria,
            ),
        )
        logger.info("Created task %s", task_id)
        return self.find(task_id)

    def _load(self, path: Path, state: TaskState) -> TaskDescriptor | None:
        task_id = TaskId.parse(path.stem)
        if task_id is None:
            logger.warning("Ignoring task file with invalid name: %s", path.name)
            return None
        try:
            text = path.read_text("utf-8")
        except FileNotFoundError:
            return None
        except OSError as error:
            raise StorageIOError(f"Cannot read task {path}: {error}") from error
        metadata = parse_metadata(text)
        return TaskDescriptor(
            task_id=task_id,
            state=state,
            path=path,
            title=parse_title(text) or task_id.slug,
            metadata=metadata,
            blocked_by=parse_task_refs(metadata.get("Blocked By", "")),
            blocks=parse_task_refs(metadata.get("Blocks", "")),
        )

    def _read(self, path: Path) -> str:
        try:
            return path.read_text("utf-8")
        except OSError as error:
            raise StorageIOError(f"Cannot read task {path}: {error}") from error

    def _criteria(self, path: Path) -> list[AcceptanceCriterion]:
        text = self._read(path)
        criteria: list[AcceptanceCriterion] = []
        for line in _section_lines(text.splitlines(), "Acceptance Criteria"):
            match = _CRITERION_PATTERN.match(line)
            if match is not None:
                criteria.append(
                    AcceptanceCriterion(
                        text=match.group("text"),
                        checked=match.group("mark") in {"x", "X"},
                    ),
                )
        return criteria

    def _rewrite_metadata(self, path: Path, updates: dict[str, str]) -> None:
        write_text_atomic(path, set_metadata(self._read(path), updates))

    def _move(self, source: Path, target: Path) -> None:
        if target.exists():
            raise TaskStateConflict(f"Cannot move {source.name}: {target} already exists")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.rename(source, target)
        except FileNotFoundError as error:
            raise TaskNotFound(source.stem) from error
        except OSError as error:
            raise StorageIOError(f"Cannot move {source} to {target}: {error}") from error

    def _rollback_move(self, current: Path, original: Path) -> None:
        try:
            os.rename(current, original)
        except OSError:
            logger.exception("Failed to roll back move of %s", current.name)

    def _stamp(self) -> str:
        return self._clock().strftime("%Y-%m-%d %H:%M")


def slugify(text: str) -> str:
    lowered = re.sub(r"[^a-z0-9-]+", "-", text.strip().lower())
    slug = re.sub(r"-{2,}", "-", lowered).strip("-")[:50].strip("-")
    return slug or "task"


def parse_title(text: str) -> str:
    for line in text.splitlines():
        if line.startswith("# "):
            title = line[2:].strip()
            return title.removeprefix("Task:").strip()
    return ""


def parse_metadata(text: str) -> dict[str, str]:
    """Read the ``| Field | Value |`` rows of the Metadata section."""

    metadata: dict[str, str] = {}
    for line in _section_lines(text.splitlines(), "Metadata"):
        cells = _table_cells(line)
        if cells is None or len(cells) < 2:
            continue
        field, value = cells[0], cells[1]
        if field == "Field" or not field.strip("-: "):
            continue
        metadata[field] = _clean_cell(value)
    return metadata


def set_metadata(text: str, updates: dict[str, str]) -> str:
    """Return ``text`` with metadata rows replaced or appended."""

    lines = text.splitlines()
    remaining = dict(updates)
    start = _find_heading(lines, "Metadata")
    if start is None:
        rows = ["| Field | Value |", "| ----- | ----- |"]
        rows.extend(_table_row(field, value) for field, value in remaining.items())
        insert_at = 1 if lines and lines[0].startswith("# ") else 0
        lines[insert_at:insert_at] = ["", "## Metadata", "", *rows, ""]
        return _join(lines)

    end = _next_heading(lines, start + 1)
    last_row = None
    for index in range(start + 1, end):
        cells = _table_cells(lines[index])
        if cells is None:
            continue
        last_row = index
        if cells and cells[0] in remaining:
            lines[index] = _table_row(cells[0], remaining.pop(cells[0]))
    if remaining:
        rows = [_table_row(field, value) for field, value in remaining.items()]
        insert_at = last_row + 1 if last_row is not None else start + 1
        lines[insert_at:insert_at] = rows
    return _join(lines)


def parse_task_refs(value: str) -> tuple[str, ...]:
    return tuple(dict.fromkeys(_TASK_REF_PATTERN.findall(value)))


def render_task(  # noqa: PLR0913
    *,
    task_id: str,
    title: str,
    priority: int,
    created: str,
    context: str,
    criteria: Iterable[str],
) -> str:
    rows = {
        "ID": task_id,
        "Status": "todo",
        "Priority": f"`{priority:03d}` {PRIORITY_LABELS[priority]}",
        "Created": created,
    }
    lines = [f"# Task: {title}", "", "## Metadata", "", "| Field | Value |", "| ----- | ----- |"]
    for field in METADATA_FIELDS:
        value = rows.get(field, "")
        lines.append(f"| {field} | {value} |" if field == "Priority" else _table_row(field, value))
    lines += ["", "---", "", "## Context", "", context.strip() or title, "", "---", ""]
    lines += ["## Acceptance Criteria", ""]
    lines += [f"- [ ] {item}" for item in criteria]
    lines += ["", "---", "", "## Plan", "", "---", "", "## Work Log", "", "---", ""]
    lines += ["## Notes", "", "---", "", "## Links", ""]
    return "\n".join(lines)


def _as_bullet(line: str) -> str:
    stripped = line.rstrip()
    if not stripped or stripped.lstrip().startswith(("-", "*")):
        return stripped
    return f"- {stripped}"


def _find_heading(lines: list[str], heading: str) -> int | None:
    target = f"## {heading}".lower()
    for index, line in enumerate(lines):
        if line.strip().lower() == target:
            return index
    return None


def _next_heading(lines: list[str], start: int) -> int:
    for index in range(start, len(lines)):
        if lines[index].startswith("## "):
            return index
    return len(lines)


def _section_lines(lines: list[str], heading: str) -> list[str]:
    start = _find_heading(lines, heading)
    if start is None:
        return []
    return lines[start + 1 : _next_heading(lines, start + 1)]


def _append_to_section(text: str, heading: str, block: list[str]) -> str:
    lines = text.splitlines()
    start = _find_heading(lines, heading)
    if start is None:
        while lines and not lines[-1].strip():
            lines.pop()
        return _join([*lines, "", "---", "", f"## {heading}", "", *block])

    end = _next_heading(lines, start + 1)
    insert_at = end
    while insert_at > start + 1 and lines[insert_at - 1].strip() in {"", "---"}:
        insert_at -= 1
    separator = ["", "---", ""] if end < len(lines) else []
    return _join([*lines[:insert_at], "", *block, *separator, *lines[end:]])


def _table_cells(line: str) -> list[str] | None:
    stripped = line.strip()
    if not stripped.startswith("|"):
        return None
    return [cell.strip() for cell in stripped.strip("|").split("|")]


def _table_row(field: str, value: str) -> str:
    cell = f"`{value}`" if value else ""
    return f"| {field} | {cell} |"


def _clean_cell(value: str) -> str:
    cleaned = value.replace("`", "").strip()
    return "" if cleaned.lower() in _EMPTY_CELL_VALUES else cleaned


def _join(lines: list[str]) -> str:
    return "\n".join(lines).rstrip("\n") + "\n"
