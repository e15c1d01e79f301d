from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
import pytest

from backlog_planner.agents import (
    AgentInvocation,
    AgentInvocationError,
    AgentProfile,
    AgentRoutingError,
    CliAgentInvoker,
    SettingsAgentRouter,
)
from backlog_planner.agents.cli_agent import build_run_args
from backlog_planner.config import AgentSettings, Settings

pytestmark = [
    allure.epic("Agents"),
    allure.feature("CLI Agent Execution"),
]


def _python_agent(script: str, placeholder: str = "{prompt}") -> AgentProfile:
    template = f"{shlex.quote(sys.executable)} -c {shlex.quote(script)} {placeholder}"
    return AgentProfile(
        id="codex",
        slug="codex",
        adapter="codex-cli",
        default_model="test-model",
        command_template=template,
    )


def test_router_prefers_override_then_command_then_default() -> None:
    settings = Settings(
        agents=AgentSettings(default_agent="codex", command_agents={"order-tasks": "claude"}),
    )
    router = SettingsAgentRouter.from_settings(settings)

    override = router.resolve_agent_for_command("order-tasks", "Gemini")
    per_command = router.resolve_agent_for_command("Order-Tasks")
    default = router.resolve_agent_for_command("backlog", "  ")

    assert (override.slug, override.adapter) == ("gemini", "gemini-cli")
    assert override.default_model == "gemini-2.5-pro"
    assert per_command.slug == "claude"
    assert per_command.command_template.startswith("claude -p")
    assert default.slug == "codex"


def test_router_rejects_unsupported_agent() -> None:
    router = SettingsAgentRouter.from_settings(Settings())

    with pytest.raises(AgentRoutingError, match="Unsupported agent: 'gpt'"):
        router.resolve_agent_for_command("order-tasks", "gpt")


def test_router_rejects_empty_template_only_when_resolved() -> None:
    templates = {"codex": " ", "claude": "claude {prompt}", "gemini": "gemini {prompt}"}
    settings = Settings(agents=AgentSettings(command_templates=templates))
    router = SettingsAgentRouter.from_settings(settings)

    assert router.resolve_agent_for_command("order-tasks", "claude").slug == "claude"
    with pytest.raises(AgentRoutingError, match="Empty command template for agent='codex'"):
        router.resolve_agent_for_command("order-tasks")


def test_build_run_args_quotes_placeholders(tmp_path: Path) -> None:
    prompt_file = tmp_path / "prompt file.txt"

    argv = build_run_args(
        command_template="codex exec --model {model} {prompt} --input {prompt_file}",
        model="gpt-5",
        prompt="it's a \"test\"",
        prompt_file=prompt_file,
    )

    assert argv == [
        "codex",
        "exec",
        "--model",
        "gpt-5",
        "it's a \"test\"",
        "--input",
        str(prompt_file),
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "template is empty"),
        ("codex exec", "must include {prompt} or {prompt_file}"),
        ("codex {unknown} {prompt}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(tmp_path: Path, template, message) -> None:
    with pytest.raises(AgentInvocationError, match=message) as error:
        build_run_args(
            command_template=template,
            model="m",
            prompt="p",
            prompt_file=tmp_path / "p.txt",
        )

    assert error.value.transient is False


def test_invoke_runs_template_with_agent_env() -> None:
    agent = _python_agent(
        "import os, sys; "
        "print(os.environ['BACKLOG_PLANNER_AGENT_PHASE'], os.environ['BACKLOG_PLANNER_AGENT']); "
        "print(sys.argv[1].upper())",
    )
    invocation = AgentInvocation(input="order these", metadata={"phase": "agent_ordering"})

    result = CliAgentInvoker(timeout_seconds=30).invoke(agent, invocation)

    assert result.output == "agent_ordering codex\nORDER THESE\n"
    assert result.adapter == "codex-cli"


def test_invoke_passes_prompt_file() -> None:
    agent = _python_agent(
        "import sys; print(open(sys.argv[1], encoding='utf-8').read())",
        placeholder="{prompt_file}",
    )

    result = CliAgentInvoker(timeout_seconds=30).invoke(agent, AgentInvocation(input="from file"))

    assert result.output == "from file\n"


def test_invoke_reports_non_zero_exit() -> None:
    agent = _python_agent("import sys; sys.stderr.write('bad input'); sys.exit(3)")

    with pytest.raises(AgentInvocationError, match="exited with code 3: bad input") as error:
        CliAgentInvoker(timeout_seconds=30).invoke(agent, AgentInvocation(input="x"))

    assert error.value.transient is False


def test_invoke_reports_missing_command() -> None:
    agent = AgentProfile(
        id="codex",
        slug="codex",
        adapter="codex-cli",
        default_model="m",
        command_template="backlog-planner-missing-agent-binary {prompt}",
    )

    with pytest.raises(AgentInvocationError, match="Agent command not found"):
        CliAgentInvoker(timeout_seconds=30).invoke(agent, AgentInvocation(input="x"))


def test_invoke_times_out_as_transient() -> None:
    agent = _python_agent("import time; time.sleep(10)")

    with pytest.raises(AgentInvocationError, match="timed out after 1s") as error:
        CliAgentInvoker(timeout_seconds=1).invoke(agent, AgentInvocation(input="x"))

    assert error.value.transient is True


def test_invoke_stream_yields_lines() -> None:
    agent = _python_agent("import sys; print('one'); print(sys.argv[1])")

    chunks = list(CliAgentInvoker(timeout_seconds=30).invoke_stream(agent, AgentInvocation("two")))

    assert [chunk.output for chunk in chunks] == ["one\n", "two\n"]


def test_invoke_stream_raises_after_failed_exit() -> None:
    agent = _python_agent("import sys; print('partial'); sys.stderr.write('boom'); sys.exit(2)")
    stream = CliAgentInvoker(timeout_seconds=30).invoke_stream(agent, AgentInvocation("x"))

    with pytest.raises(AgentInvocationError, match="exited with code 2: boom"):
        list(stream)


def test_invoke_stream_wraps_start_failures(tmp_path: Path) -> None:
    script = tmp_path / "agent.sh"
    script.write_text("#!/bin/sh\necho hi\n", encoding="utf-8")
    script.chmod(0o644)
    agent = AgentProfile(
        id="codex",
        slug="codex",
        adapter="codex-cli",
        default_model="m",
        command_template=f"{shlex.quote(str(script))} {{prompt}}",
    )
    stream = CliAgentInvoker(timeout_seconds=30).invoke_stream(agent, AgentInvocation("x"))

    with pytest.raises(AgentInvocationError, match="could not start") as error:
        list(stream)

    assert error.value.transient is False


def test_invoke_stream_wraps_undecodable_output() -> None:
    agent = _python_agent("import sys; sys.stdout.buffer.write(b'\\xff\\xfe\\n')")
    stream = CliAgentInvoker(timeout_seconds=30).invoke_stream(agent, AgentInvocation("x"))

    with pytest.raises(AgentInvocationError, match="undecodable output"):
        list(stream)
