"""CLI entrypoint for backlog-planner."""

from pathlib import Path

import rich_click as click

from backlog_planner import __version__
from backlog_planner.config import PLANNING_CONTEXT_POLICIES
from backlog_planner.controllers import (
    BacklogCommand,
    BacklogPlannerCliController,
    InitCommand,
    OrderTasksCommand,
)
from backlog_planner.errors import BacklogPlannerError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = BacklogPlannerCliController(
    stream_sink=lambda text: click.echo(text, nl=False, err=True),
)


@click.group()
@click.version_option(version=__version__, prog_name="backlog-planner")
def backlog_planner() -> None:
    """Dependency-aware backlog planning CLI."""


@backlog_planner.command("init")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def init(db_path: Path | None) -> None:
    """Create or migrate the workspace database."""

    _emit_lines(_run(CONTROLLER.init, InitCommand(db_path=db_path)))


@backlog_planner.command("order-tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project", "project_key", required=True, help="Project key to order.")
@click.option("--epic", "epic_key", default=None, help="Restrict ordering to one epic.")
@click.option("--story", "story_key", default=None, help="Restrict ordering to one user story.")
@click.option("--assignee", default=None, help="Only tasks assigned to this person.")
@click.option(
    "--status",
    "statuses",
    multiple=True,
    help="Status filter. Can be repeated or comma separated.",
)
@click.option("--agent", default=None, help="Agent slug used to refine the order.")
@click.option(
    "--agent-stream/--no-agent-stream",
    default=True,
    show_default=True,
    help="Stream agent output to stderr.",
)
@click.option(
    "--infer-deps",
    is_flag=True,
    default=False,
    help="Ask the agent to infer missing dependencies.",
)
@click.option(
    "--stage-order",
    default=None,
    help="Comma separated stage order, for example `foundation,backend,frontend,other`.",
)
@click.option(
    "--inject-foundation/--no-inject-foundation",
    default=True,
    show_default=True,
    help="Make non-foundation tasks depend on foundation tasks.",
)
@click.option(
    "--enrich-metadata/--no-enrich-metadata",
    default=True,
    show_default=True,
    help="Store stage, impact, and complexity in task metadata.",
)
@click.option(
    "--apply/--dry-run",
    default=True,
    show_default=True,
    help="Persist priorities and inferred dependencies.",
)
@click.option(
    "--planning-context-policy",
    type=click.Choice(PLANNING_CONTEXT_POLICIES),
    default=None,
    help="How strictly planning documents are required.",
)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print JSON output.")
def order_tasks(  # noqa: PLR0913
    db_path: Path | None,
    project_key: str,
    epic_key: str | None,
    story_key: str | None,
    assignee: str | None,
    statuses: tuple[str, ...],
    agent: str | None,
    agent_stream: bool,
    infer_deps: bool,
    stage_order: str | None,
    inject_foundation: bool,
    enrich_metadata: bool,
    apply: bool,
    planning_context_policy: str | None,
    as_json: bool,
) -> None:
    """Order tasks by dependencies and write dense priorities."""

    _emit_lines(
        _run(
            CONTROLLER.order_tasks,
            OrderTasksCommand(
                db_path=db_path,
                project_key=project_key,
                epic_key=epic_key,
                story_key=story_key,
                assignee=assignee,
                statuses=_split_statuses(statuses),
                agent=agent,
                agent_stream=agent_stream,
                infer_dependencies=infer_deps,
                stage_order=stage_order,
                inject_foundation=inject_foundation,
                enrich_metadata=enrich_metadata,
                apply=apply,
                planning_context_policy=planning_context_policy,
                as_json=as_json,
            ),
        ),
    )


@backlog_planner.command("backlog")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project", "project_key", default=None, help="Project key.")
@click.option("--epic", "epic_key", default=None, help="Epic key.")
@click.option("--story", "story_key", default=None, help="User story key.")
@click.option("--assignee", default=None, help="Only tasks assigned to this person.")
@click.option(
    "--status",
    "statuses",
    multiple=True,
    help="Status filter. Can be repeated or comma separated.",
)
@click.option(
    "--order-by-deps",
    is_flag=True,
    default=False,
    help="Order tasks by dependencies instead of lane and priority.",
)
@click.option("--verbose", is_flag=True, default=False, help="Include diagnostic warnings.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print JSON output.")
def backlog(  # noqa: PLR0913
    db_path: Path | None,
    project_key: str | None,
    epic_key: str | None,
    story_key: str | None,
    assignee: str | None,
    statuses: tuple[str, ...],
    order_by_deps: bool,
    verbose: bool,
    as_json: bool,
) -> None:
    """Show backlog totals by lane with epic and story summaries."""

    _emit_lines(
        _run(
            CONTROLLER.backlog,
            BacklogCommand(
                db_path=db_path,
                project_key=project_key,
                epic_key=epic_key,
                story_key=story_key,
                assignee=assignee,
                statuses=_split_statuses(statuses),
                order_by_dependencies=order_by_deps,
                verbose=verbose,
                as_json=as_json,
            ),
        ),
    )


def _run(handler, command):
    try:
        return handler(command)
    except (BacklogPlannerError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _split_statuses(values: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(part.strip() for value in values for part in value.split(",") if part.strip())


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    backlog_planner()
