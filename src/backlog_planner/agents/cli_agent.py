"""Subprocess-based invoker for CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from backlog_planner.agents.base import (
    AgentChunk,
    AgentInvocation,
    AgentInvocationError,
    AgentInvocationResult,
    AgentProfile,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 600


class CliAgentInvoker:
    """Render the agent's command template and run it as a subprocess."""

    def __init__(self, *, timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds

    def invoke(self, agent: AgentProfile, invocation: AgentInvocation) -> AgentInvocationResult:
        with _prompt_file(invocation.input) as prompt_file:
            run_args = build_run_args(
                command_template=agent.command_template,
                model=agent.default_model,
                prompt=invocation.input,
                prompt_file=prompt_file,
            )
            logger.debug("Invoking agent %s (%s)", agent.slug, run_args[0])
            try:
                completed = subprocess.run(  # noqa: S603
                    run_args,
                    env=_agent_env(agent, invocation),
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_seconds,
                    check=False,
                )
            except FileNotFoundError as error:
                raise AgentInvocationError(
                    f"Agent command not found: {run_args[0]}",
                    transient=False,
                ) from error
            except subprocess.TimeoutExpired as error:
                raise AgentInvocationError(
                    f"Agent {agent.slug} timed out after {self.timeout_seconds}s",
                    transient=True,
                ) from error
            except UnicodeDecodeError as error:
                raise AgentInvocationError(
                    f"Agent {agent.slug} produced undecodable output: {error}",
                    transient=False,
                ) from error
        if completed.returncode != 0:
            raise AgentInvocationError(
                f"Agent {agent.slug} exited with code {completed.returncode}: "
                f"{completed.stderr.strip()[:500]}",
                transient=False,
            )
        return AgentInvocationResult(output=completed.stdout, adapter=agent.adapter)

    def invoke_stream(
        self,
        agent: AgentProfile,
        invocation: AgentInvocation,
    ) -> Iterator[AgentChunk]:
        with (
            _prompt_file(invocation.input) as prompt_file,
            tempfile.TemporaryFile(mode="w+", encoding="utf-8") as stderr_handle,
        ):
            run_args = build_run_args(
                command_template=agent.command_template,
                model=agent.default_model,
                prompt=invocation.input,
                prompt_file=prompt_file,
            )
            try:
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    env=_agent_env(agent, invocation),
                    stdout=subprocess.PIPE,
                    stderr=stderr_handle,
                    text=True,
                    encoding="utf-8",
                )
            except FileNotFoundError as error:
                raise AgentInvocationError(
                    f"Agent command not found: {run_args[0]}",
                    transient=False,
                ) from error
            except OSError as error:
                raise AgentInvocationError(
                    f"Agent command could not start: {error}",
                    transient=False,
                ) from error

            deadline = time.monotonic() + self.timeout_seconds
            try:
                if process.stdout is None:
                    raise AgentInvocationError(
                        f"Agent {agent.slug} stdout is not readable",
                        transient=False,
                    )
                for line in process.stdout:
                    yield AgentChunk(output=line)
                    if time.monotonic() >= deadline:
                        raise AgentInvocationError(
                            f"Agent {agent.slug} timed out after {self.timeout_seconds}s",
                            transient=True,
                        )
                returncode = process.wait(timeout=max(0.1, deadline - time.monotonic()))
            except subprocess.TimeoutExpired as error:
                raise AgentInvocationError(
                    f"Agent {agent.slug} timed out after {self.timeout_seconds}s",
                    transient=True,
                ) from error
            except UnicodeDecodeError as error:
                raise AgentInvocationError(
                    f"Agent {agent.slug} produced undecodable output: {error}",
                    transient=False,
                ) from error
            finally:
                if process.poll() is None:
                    _terminate_process(process)
                if process.stdout is not None:
                    process.stdout.close()
            stderr_handle.seek(0)
            stderr = stderr_handle.read()
            if returncode != 0:
                raise AgentInvocationError(
                    f"Agent {agent.slug} exited with code {returncode}: {stderr.strip()[:500]}",
                    transient=False,
                )


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    """Render a POSIX command template into argv."""

    stripped = command_template.strip()
    if not stripped:
        raise AgentInvocationError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise AgentInvocationError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except KeyError as error:
        raise AgentInvocationError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentInvocationError(
            "Agent command template rendered empty command.",
            transient=False,
        )
    return argv


@contextmanager
def _prompt_file(prompt: str) -> Iterator[Path]:
    """Temporary file holding the prompt for `{prompt_file}` templates."""

    handle, name = tempfile.mkstemp(prefix="backlog-planner-prompt-", suffix=".txt")
    with os.fdopen(handle, "w", encoding="utf-8") as stream:
        stream.write(prompt)
    path = Path(name)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)


def _agent_env(agent: AgentProfile, invocation: AgentInvocation) -> dict[str, str]:
    env = os.environ.copy()
    env["BACKLOG_PLANNER_AGENT"] = agent.slug
    env["BACKLOG_PLANNER_AGENT_MODEL"] = agent.default_model
    phase = invocation.metadata.get("phase")
    if isinstance(phase, str):
        env["BACKLOG_PLANNER_AGENT_PHASE"] = phase
    return env


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
