"""Local stand-in agent for CLI backend integration tests.

Behaviour per phase attempt is scripted through ``ECHO_AGENT_PLAN``::

    ECHO_AGENT_PLAN="IMPLEMENT=timeout,fail;TEST=rate_limit"

Attempt N of a phase performs the N-th listed action; attempts past the end
of the list succeed.  Actions: ``ok``, ``slow``, ``fail``, ``rate_limit``,
``timeout``, ``no_status``, ``incomplete``, ``leave_unchecked``.  ``slow`` and
``timeout`` sleep for ``ECHO_AGENT_SLEEP_SECONDS``; ``slow`` then succeeds.
"""

from __future__ import annotations

import argparse
import os
import re
import sys
import time
from pathlib import Path

_UNCHECKED = re.compile(r"^(\s*[-*]\s+)\[ \]", re.MULTILINE)


def main(argv: list[str] | None = None) -> int:
    """Run one scripted phase attempt."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--model", default="")
    args = parser.parse_args(argv)

    phase = os.getenv("DOYAKEN_PHASE", "UNKNOWN")
    attempt = int(os.getenv("DOYAKEN_ATTEMPT", "1"))
    action = _action_for(phase, attempt, os.getenv("ECHO_AGENT_PLAN", ""))
    prompt = Path(args.prompt_file).read_text("utf-8")
    _record_call(phase=phase, attempt=attempt, model=args.model, action=action)

    print(f"echo agent phase={phase} attempt={attempt} model={args.model}")
    print(f"prompt bytes={len(prompt)}")

    if action == "timeout":
        time.sleep(float(os.getenv("ECHO_AGENT_SLEEP_SECONDS", "30")))
        return 0
    if action == "slow":
        time.sleep(float(os.getenv("ECHO_AGENT_SLEEP_SECONDS", "1")))
    if action == "fail":
        print("simulated failure", file=sys.stderr)
        return 1
    if action == "rate_limit":
        print("Error: 429 Too Many Requests - rate limit exceeded", file=sys.stderr)
        return 1
    if action == "no_status":
        print("done, but forgot the status block")
        return 0

    if phase == "VERIFY" and action != "leave_unchecked":
        _check_acceptance_criteria(os.getenv("DOYAKEN_TASK_FILE", ""))

    print("")
    print("DOYAKEN_STATUS:")
    print(f"  PHASE_COMPLETE: {'false' if action == 'incomplete' else 'true'}")
    print("  FILES_MODIFIED: 1")
    print("  TESTS_STATUS: pass")
    print("  CONFIDENCE: high")
    print("  REMAINING_WORK: none")
    return 0


def _action_for(phase: str, attempt: int, plan: str) -> str:
    for entry in plan.split(";"):
        name, _, actions = entry.partition("=")
        if name.strip().upper() != phase:
            continue
        steps = [step.strip() for step in actions.split(",") if step.strip()]
        if attempt <= len(steps):
            return steps[attempt - 1]
    return "ok"


def _record_call(*, phase: str, attempt: int, model: str, action: str) -> None:
    log_path = os.getenv("ECHO_AGENT_LOG", "")
    if not log_path:
        return
    with Path(log_path).open("a", encoding="utf-8") as handle:
        handle.write(f"{phase} {attempt} {model} {action}\n")


def _check_acceptance_criteria(task_file: str) -> None:
    if not task_file:
        return
    path = Path(task_file)
    if path.is_file():
        path.write_text(_UNCHECKED.sub(r"\1[x]", path.read_text("utf-8")), "utf-8")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
