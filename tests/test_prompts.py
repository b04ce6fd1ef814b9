from __future__ import annotations

from pathlib import Path

import allure
import pytest

from doyaken.orchestrator.errors import PromptNotFound
from doyaken.orchestrator.prompts import BUILTIN_PROMPTS, PromptRenderer, substitute
from doyaken.orchestrator.status_block import STATUS_MARKER

pytestmark = [
    allure.epic("Phase Executor"),
    allure.feature("Prompt Rendering"),
]


def _renderer(tmp_path: Path) -> PromptRenderer:
    return PromptRenderer(
        project_prompts_dir=tmp_path / "project" / "prompts",
        global_prompts_dir=tmp_path / "global" / "prompts",
    )


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, "utf-8")


def test_builtin_prompt_covers_every_phase(tmp_path: Path) -> None:
    renderer = _renderer(tmp_path)

    rendered = renderer.render(
        "3-implement.md",
        variables={"TASK_ID": "002-001-demo", "TASK_FILE": "/tmp/demo.md"},
    )

    assert len(BUILTIN_PROMPTS) == 8
    assert "You are working on task 002-001-demo." in rendered
    assert "Phase IMPLEMENT" in rendered
    assert STATUS_MARKER in rendered


def test_project_prompt_overrides_global(tmp_path: Path) -> None:
    _write(tmp_path / "global" / "prompts" / "phases" / "2-plan.md", "global plan")
    renderer = _renderer(tmp_path)
    assert renderer.load_template("2-plan.md") == "global plan"

    _write(tmp_path / "project" / "prompts" / "phases" / "2-plan.md", "project plan")
    assert renderer.load_template("2-plan.md") == "project plan"


def test_unknown_prompt_raises(tmp_path: Path) -> None:
    with pytest.raises(PromptNotFound):
        _renderer(tmp_path).load_template("9-deploy.md")


def test_includes_resolve_nested_and_leave_missing(tmp_path: Path) -> None:
    base = tmp_path / "project" / "prompts"
    _write(base / "library" / "outer.md", "outer {{include:library/inner.md}}")
    _write(base / "library" / "inner.md", "inner for {{TASK_ID}}")
    _write(
        base / "phases" / "0-expand.md",
        "start {{include:library/outer.md}} {{include:library/missing.md}}"
        " {{include:../secrets.md}}",
    )

    rendered = _renderer(tmp_path).render("0-expand.md", variables={"TASK_ID": "t-1"})

    assert rendered.startswith("start outer inner for t-1")
    assert "{{include:library/missing.md}}" in rendered
    assert "{{include:../secrets.md}}" in rendered


def test_include_depth_is_bounded(tmp_path: Path) -> None:
    base = tmp_path / "project" / "prompts"
    _write(base / "loop.md", "x{{include:loop.md}}")

    resolved = _renderer(tmp_path).resolve_includes("{{include:loop.md}}", depth=3)

    assert resolved == "xxx{{include:loop.md}}"


def test_render_appends_previous_summary_and_error_context(tmp_path: Path) -> None:
    rendered = _renderer(tmp_path).render(
        "4-test.md",
        variables={},
        previous_summary="IMPLEMENT completed: files_modified=2",
        error_context="Quality gate 'test' exited with code 1",
    )

    assert "## Previous phase\n\nIMPLEMENT completed: files_modified=2" in rendered
    assert "## Previous attempt failed" in rendered
    assert rendered.index("## Previous attempt failed") < rendered.index(STATUS_MARKER)


def test_substitute_leaves_unknown_placeholders() -> None:
    assert substitute("{{A}} {{B}} {{lower}}", {"A": "1"}) == "1 {{B}} {{lower}}"
