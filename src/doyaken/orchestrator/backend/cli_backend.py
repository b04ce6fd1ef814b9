"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import time
from pathlib import Path
from typing import IO

from doyaken.orchestrator.backend.base import AgentRunRequest, AgentRunResult
from doyaken.orchestrator.errors import BackendRunError

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class CliAgentBackend:
    """Execute the agent command template with stdout/stderr captured to files."""

    def __init__(self, *, poll_interval_seconds: float = 0.1) -> None:
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        run_args = build_run_args(
            command_template=request.command_template,
            model=request.model,
            prompt=request.prompt,
            prompt_file=request.prompt_file,
        )
        try:
            request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
            request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
            request.prompt_file.parent.mkdir(parents=True, exist_ok=True)
            request.prompt_file.write_text(request.prompt, "utf-8")
        except OSError as error:
            raise BackendRunError(
                f"Cannot prepare agent run files: {error}",
                transient=True,
            ) from error

        env = os.environ.copy()
        env.update(request.env)
        logger.debug("Starting agent %s (timeout %ss)", run_args[0], request.timeout_seconds)

        try:
            with (
                request.stdout_path.open("w", encoding="utf-8") as stdout_handle,
                request.stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                return self._run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    cwd=request.cwd,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    request=request,
                )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"Agent command failed to start: {error}",
                transient=True,
            ) from error

    def _run_subprocess_with_shutdown(  # noqa: PLR0913
        self,
        *,
        run_args: list[str],
        env: dict[str, str],
        cwd: Path,
        timeout_seconds: int,
        stdout_handle: IO[str],
        stderr_handle: IO[str],
        request: AgentRunRequest,
    ) -> AgentRunResult:
        process = subprocess.Popen(  # noqa: S603
            run_args,
            env=env,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
        )
        start_monotonic = time.monotonic()
        last_heartbeat = start_monotonic
        shutdown_deadline: float | None = None
        graceful_seconds = max(0, request.graceful_shutdown_seconds or 0)

        def finish(exit_code: int, *, timed_out: bool = False, interrupted: bool = False):
            return AgentRunResult(
                exit_code=exit_code,
                timed_out=timed_out,
                interrupted=interrupted,
                stdout_path=request.stdout_path,
                stderr_path=request.stderr_path,
                duration_seconds=time.monotonic() - start_monotonic,
            )

        while True:
            returncode = process.poll()
            if returncode is not None:
                return finish(returncode)

            now = time.monotonic()
            if now - start_monotonic >= timeout_seconds:
                logger.warning("Agent exceeded %ss timeout, terminating", timeout_seconds)
                _terminate_process(process)
                return finish(TIMEOUT_EXIT_CODE, timed_out=True)

            if request.shutdown_requested is not None and request.shutdown_requested():
                if shutdown_deadline is None:
                    logger.info("Shutdown requested, giving agent %ss to finish", graceful_seconds)
                    shutdown_deadline = now + graceful_seconds
                if now >= shutdown_deadline:
                    _terminate_process(process)
                    return finish(TIMEOUT_EXIT_CODE, interrupted=True)

            interval = request.heartbeat_interval_seconds
            if request.heartbeat is not None and interval and now - last_heartbeat >= interval:
                last_heartbeat = now
                try:
                    request.heartbeat()
                except Exception:
                    logger.warning("Heartbeat failed, terminating agent")
                    _terminate_process(process)
                    raise

            time.sleep(self.poll_interval_seconds)


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    """Render ``{model}``, ``{prompt}`` and ``{prompt_file}`` into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError("Agent command template rendered empty command.", transient=False)
    return argv


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def check_agent_available(command_template: str) -> str:
    """Fail fast when the agent executable cannot be found; return its path."""

    argv = build_run_args(
        command_template=command_template,
        model="",
        prompt="",
        prompt_file=Path("prompt.md"),
    )
    resolved = shutil.which(argv[0])
    if resolved is None:
        raise BackendRunError(f"Agent command not found: {argv[0]}", transient=False)
    logger.debug("Agent executable resolved to %s", resolved)
    return resolved
