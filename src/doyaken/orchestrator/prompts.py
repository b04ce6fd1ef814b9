"""Phase prompt lookup and rendering."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from doyaken.orchestrator.errors import PromptNotFound
from doyaken.orchestrator.status_block import STATUS_BLOCK_INSTRUCTIONS

logger = logging.getLogger(__name__)

MAX_INCLUDE_DEPTH = 5

_INCLUDE_PATTERN = re.compile(r"\{\{include:([^}]+)\}\}")
_VARIABLE_PATTERN = re.compile(r"\{\{([A-Z][A-Z0-9_]*)\}\}")

_TASK_HEADER = "You are working on task {{TASK_ID}}. The task file is {{TASK_FILE}}.\n\n"

BUILTIN_PROMPTS: dict[str, str] = {
    "0-expand.md": _TASK_HEADER
    + "Phase EXPAND: turn the brief task description into a full specification.\n"
    "Update the Context and Acceptance Criteria sections of the task file with\n"
    "concrete, testable criteria. Do not write code.\n",
    "1-triage.md": _TASK_HEADER
    + "Phase TRIAGE: check that the task is feasible and well scoped. Record\n"
    "dependencies, risks and affected areas in the Notes section.\n",
    "2-plan.md": _TASK_HEADER
    + "Phase PLAN: write a step-by-step implementation plan into the Plan\n"
    "section of the task file. Do not write code yet.\n",
    "3-implement.md": _TASK_HEADER
    + "Phase IMPLEMENT: implement the plan from the task file. Keep changes\n"
    "focused on the task.\n",
    "4-test.md": _TASK_HEADER
    + "Phase TEST: add or update tests for the changes and make them pass.\n",
    "5-docs.md": _TASK_HEADER
    + "Phase DOCS: update documentation affected by the changes.\n",
    "6-review.md": _TASK_HEADER
    + "Phase REVIEW: review the changes for correctness, style and security.\n"
    "Fix the problems you find.\n",
    "7-verify.md": _TASK_HEADER
    + "Phase VERIFY: verify every acceptance criterion. Tick each satisfied\n"
    "criterion in the task file (`- [x]`) and commit the work with the task id\n"
    "in the message.\n",
}

PREVIOUS_SUMMARY_TEMPLATE = "## Previous phase\n\n{summary}\n"
ERROR_CONTEXT_TEMPLATE = (
    "## Previous attempt failed\n\n{error}\n\nAddress this failure and complete the phase.\n"
)


class PromptRenderer:
    """Resolve phase prompts: project, then global, then built-in defaults."""

    def __init__(self, *, project_prompts_dir: Path, global_prompts_dir: Path | None) -> None:
        self.search_dirs = [project_prompts_dir]
        if global_prompts_dir is not None:
            self.search_dirs.append(global_prompts_dir)

    def load_template(self, prompt_file: str) -> str:
        for base in self.search_dirs:
            candidate = base / "phases" / prompt_file
            if candidate.is_file():
                logger.debug("Using prompt %s", candidate)
                return candidate.read_text("utf-8")
        if prompt_file in BUILTIN_PROMPTS:
            return BUILTIN_PROMPTS[prompt_file]
        raise PromptNotFound(f"No prompt template named {prompt_file}")

    def render(
        self,
        prompt_file: str,
        *,
        variables: dict[str, str],
        previous_summary: str | None = None,
        error_context: str | None = None,
    ) -> str:
        """Render the phase prompt with includes, variables and trailers."""

        text = self.resolve_includes(self.load_template(prompt_file))
        parts = [substitute(text, variables).rstrip() + "\n"]
        if previous_summary:
            parts.append(PREVIOUS_SUMMARY_TEMPLATE.format(summary=previous_summary.strip()))
        if error_context:
            parts.append(ERROR_CONTEXT_TEMPLATE.format(error=error_context.strip()))
        parts.append(STATUS_BLOCK_INSTRUCTIONS)
        return "\n".join(parts)

    def resolve_includes(self, text: str, depth: int = MAX_INCLUDE_DEPTH) -> str:
        """Inline ``{{include:path}}`` directives, nesting at most ``depth`` levels."""

        if depth <= 0:
            return text

        def _replace(match: re.Match[str]) -> str:
            relative = match.group(1).strip()
            included = self._find_include(relative)
            if included is None:
                logger.warning("Include file not found: %s", relative)
                return match.group(0)
            return self.resolve_includes(included.read_text("utf-8"), depth - 1)

        return _INCLUDE_PATTERN.sub(_replace, text)

    def _find_include(self, relative: str) -> Path | None:
        if Path(relative).is_absolute() or ".." in Path(relative).parts:
            return None
        for base in self.search_dirs:
            candidate = base / relative
            if candidate.is_file():
                return candidate
        return None


def substitute(text: str, variables: dict[str, str]) -> str:
    """Replace ``{{NAME}}`` placeholders; unknown names stay as they are."""

    return _VARIABLE_PATTERN.sub(lambda match: variables.get(match.group(1), match.group(0)), text)
