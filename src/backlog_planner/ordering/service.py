"""Dependency-aware task ordering: the `order-tasks` use case."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from backlog_planner.agents.base import (
    AgentInvocation,
    AgentInvocationError,
    AgentInvoker,
    AgentProfile,
    AgentRouter,
)
from backlog_planner.agents.cli_agent import CliAgentInvoker
from backlog_planner.agents.routing import SettingsAgentRouter
from backlog_planner.config import Settings
from backlog_planner.docdex import DocdexClient, DocumentSearch
from backlog_planner.errors import UnknownScopeError
from backlog_planner.jobs import JobService, RunStatus, TokenUsageRecord
from backlog_planner.models import (
    DependencyRow,
    EpicRow,
    ProjectRow,
    StoryRow,
    TaskRow,
    TaskScope,
    normalize_status_filter,
)
from backlog_planner.ordering.enrichment import EnrichmentResult, build_ordering_metadata
from backlog_planner.ordering.graph import build_task_nodes, compute_dependency_impact
from backlog_planner.ordering.inference import (
    EdgeInjectionReport,
    apply_inferred_dependencies,
    inject_foundation_dependencies,
    injection_warnings,
    merge_inserts,
    parse_dependency_inference_output,
)
from backlog_planner.ordering.models import (
    DependencyImpact,
    TaskNode,
    TaskOrderingRequest,
    TaskOrderingResult,
    TaskOrderItem,
)
from backlog_planner.ordering.planning_context import (
    DocContext,
    build_doc_context,
    enforce_planning_context_policy,
    estimate_tokens,
)
from backlog_planner.ordering.priorities import build_priority_plan
from backlog_planner.ordering.prompts import build_inference_prompt, build_ranking_prompt
from backlog_planner.ordering.ranking import parse_agent_ranking
from backlog_planner.ordering.scheduler import (
    SchedulingContext,
    build_stage_order_map,
    topological_sort,
)
from backlog_planner.storage.repository import WorkspaceRepository
from backlog_planner.storage.sqlmodel_models import (
    REQUIRED_ORDERING_TABLES,
    REQUIRED_TELEMETRY_TABLES,
)

logger = logging.getLogger(__name__)

COMMAND_NAME = "order-tasks"
JOB_TYPE = "task_ordering"


class TaskOrderingService:
    """Order a project's tasks by dependencies, stage, impact, and optional agent ranking."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: WorkspaceRepository,
        jobs: JobService | None = None,
        router: AgentRouter | None = None,
        invoker: AgentInvoker | None = None,
        docdex: DocumentSearch | None = None,
        record_telemetry: bool = True,
        stream_sink: Callable[[str], None] | None = None,
    ) -> None:
        self.repository = repository
        self.jobs = jobs
        self.router = router
        self.invoker = invoker
        self.docdex = docdex
        self.record_telemetry = record_telemetry and jobs is not None
        self.stream_sink = stream_sink

    @classmethod
    def create(
        cls,
        settings: Settings,
        *,
        record_telemetry: bool = True,
        stream_sink: Callable[[str], None] | None = None,
    ) -> TaskOrderingService:
        """Open the workspace database and wire collaborators from settings."""

        repository = WorkspaceRepository(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        try:
            repository.ensure_ready(REQUIRED_ORDERING_TABLES)
            telemetry = (
                record_telemetry
                and settings.record_telemetry
                and not repository.missing_tables(REQUIRED_TELEMETRY_TABLES)
            )
            return cls(
                repository=repository,
                jobs=JobService(repository.engine) if telemetry else None,
                router=SettingsAgentRouter.from_settings(settings),
                invoker=CliAgentInvoker(timeout_seconds=settings.agents.timeout_seconds),
                docdex=DocdexClient(
                    base_url=settings.docdex.base_url,
                    repo_id=settings.docdex.repo_id,
                    timeout_seconds=settings.docdex.timeout_seconds,
                ),
                record_telemetry=telemetry,
                stream_sink=stream_sink,
            )
        except Exception:
            repository.close()
            raise

    def close(self) -> None:
        close_docdex = getattr(self.docdex, "close", None)
        if callable(close_docdex):
            close_docdex()
        self.repository.close()

    def __enter__(self) -> TaskOrderingService:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def order_tasks(self, request: TaskOrderingRequest) -> TaskOrderingResult:
        """Compute, and unless dry-running persist, the execution order for a scope."""

        statuses, warnings = normalize_status_filter(request.statuses)
        run_id: str | None = None
        job_id: str | None = None
        if self.record_telemetry and self.jobs is not None:
            run_id = self.jobs.start_command_run(COMMAND_NAME, project_key=request.project_key)
            job_id = self.jobs.start_job(
                job_type=JOB_TYPE,
                command_name=COMMAND_NAME,
                command_run_id=run_id,
                project_key=request.project_key,
                payload={
                    "project_key": request.project_key,
                    "epic_key": request.epic_key,
                    "story_key": request.story_key,
                    "assignee": request.assignee,
                    "statuses": list(statuses),
                    "agent": request.agent_name,
                },
            )
        try:
            result = self._order(request, statuses, warnings, run_id=run_id, job_id=job_id)
        except Exception as error:
            if self.jobs is not None and job_id is not None:
                self.jobs.update_job_status(
                    job_id,
                    RunStatus.FAILED.value,
                    error_summary=str(error),
                )
            if self.jobs is not None and run_id is not None:
                self.jobs.finish_command_run(
                    run_id,
                    RunStatus.FAILED.value,
                    error_summary=str(error),
                )
            raise

        if self.jobs is not None and job_id is not None:
            self.jobs.update_job_status(
                job_id,
                RunStatus.COMPLETED.value,
                processed_items=len(result.ordered),
                payload={
                    "warnings": result.warnings,
                    "statuses": list(statuses),
                    "epic_key": result.epic.key if result.epic else None,
                    "story_key": result.story.key if result.story else None,
                },
            )
        if self.jobs is not None and run_id is not None:
            self.jobs.finish_command_run(
                run_id,
                RunStatus.SUCCEEDED.value,
                processed_items=len(result.ordered),
            )
        return result

    def _order(  # noqa: PLR0912, PLR0915
        self,
        request: TaskOrderingRequest,
        statuses: tuple[str, ...],
        warnings: list[str],
        *,
        run_id: str | None,
        job_id: str | None,
    ) -> TaskOrderingResult:
        project, epic, story = self._resolve_scope(request)
        tasks = self.repository.fetch_tasks(
            TaskScope(
                project_id=project.id,
                epic_id=epic.id if epic else None,
                story_id=story.id if story else None,
                assignee=request.assignee,
                statuses=statuses,
            ),
        )
        dependencies = self.repository.fetch_dependencies(task.id for task in tasks)
        logger.info("Ordering %d tasks for project %s", len(tasks), project.key)

        if request.inject_foundation_deps:
            report = inject_foundation_dependencies(tasks, dependencies)
            self._apply_report(report, tasks, dependencies, warnings, persist=request.apply)
        graph = build_task_nodes(tasks, dependencies)

        use_ranking = bool(request.agent_name)
        use_agent = use_ranking or request.infer_dependencies
        doc_context: DocContext | None = None
        if use_agent or request.enrich_metadata:
            doc_context = self._resolve_doc_context(project, warnings)
            enforce_planning_context_policy(request.planning_context_policy, doc_context)
            if doc_context is not None:
                self._record_tokens(
                    run_id=run_id,
                    job_id=job_id,
                    project_id=project.id,
                    action="docdex_context",
                    tokens_prompt=estimate_tokens(doc_context.content),
                    metadata={"source": doc_context.source},
                )

        agent: AgentProfile | None = None
        if use_agent:
            try:
                agent = self._resolve_agent(request.agent_name)
            except Exception as error:  # noqa: BLE001
                warnings.append(f"Agent resolution failed: {error}")

        if request.infer_dependencies and agent is not None:
            try:
                prompt = build_inference_prompt(
                    graph.nodes,
                    project=project,
                    epic=epic,
                    story=story,
                    doc_context=doc_context,
                )
                output = self._invoke_agent(
                    agent,
                    prompt,
                    stream=request.agent_stream,
                    metadata={"command": COMMAND_NAME, "phase": "infer_dependencies"},
                )
                inferred = parse_dependency_inference_output(
                    output,
                    {task.key for task in tasks},
                    warnings,
                )
                report = apply_inferred_dependencies(tasks, dependencies, inferred)
                self._apply_report(report, tasks, dependencies, warnings, persist=request.apply)
                graph = build_task_nodes(tasks, dependencies)
            except Exception as error:  # noqa: BLE001
                warnings.append(f"Dependency inference skipped: {error}")
        elif request.infer_dependencies:
            warnings.append("Dependency inference skipped: no agent resolved.")

        if graph.missing_refs:
            warnings.append(f"Missing dependencies referenced: {', '.join(graph.missing_refs)}")
        missing_context = self.repository.load_missing_context(node.id for node in graph.nodes)
        if missing_context:
            warnings.append(f"Tasks with open missing_context comments: {len(missing_context)}")
        if request.enrich_metadata and doc_context is None:
            warnings.append(
                "Planning context unavailable: ordering metadata enrichment used "
                "task/dependency heuristics only.",
            )

        impact = compute_dependency_impact(graph.dependents)
        enrichment = (
            build_ordering_metadata(
                graph.nodes,
                impact,
                missing_context,
                doc_context_source=doc_context.source if doc_context else None,
            )
            if request.enrich_metadata
            else EnrichmentResult()
        )
        context = SchedulingContext(
            impact=impact,
            complexity=enrichment.complexity_by_task,
            missing_context=missing_context,
            stage_order=build_stage_order_map(request.stage_order),
        )
        first_pass = topological_sort(graph.nodes, graph.dependents, context)
        if first_pass.cycle:
            warnings.append("Dependency cycle detected; ordering may be partial.")
            logger.info("Cycle detected among %d tasks", len(first_pass.cycle_members))

        if use_ranking and agent is not None:
            try:
                context.agent_rank = self._rank_with_agent(
                    agent,
                    first_pass.ordered,
                    impact,
                    request=request,
                    project=project,
                    epic=epic,
                    statuses=statuses,
                    doc_context=doc_context,
                    warnings=warnings,
                    run_id=run_id,
                    job_id=job_id,
                )
            except Exception as error:  # noqa: BLE001
                warnings.append(f"Agent refinement skipped: {error}")
        elif use_ranking:
            warnings.append("Agent refinement skipped: no agent resolved.")

        final_pass = topological_sort(graph.nodes, graph.dependents, context)
        if final_pass.cycle and not first_pass.cycle:
            warnings.append("Agent-influenced ordering encountered a cycle; used partial order.")
        cycle_members = first_pass.cycle_members | final_pass.cycle_members

        metadata_by_task = enrichment.metadata_by_task if request.enrich_metadata else None
        if request.apply:
            self.repository.persist_priority_plan(
                build_priority_plan(final_pass.ordered, metadata_by_task),
            )
        else:
            warnings.append("Dry run: priorities and dependency inferences were not persisted.")

        return TaskOrderingResult(
            project=project,
            epic=epic,
            story=story,
            ordered=_map_result(final_pass.ordered, impact, cycle_members, metadata_by_task),
            warnings=warnings,
            job_id=job_id,
            command_run_id=run_id,
        )

    def _resolve_scope(
        self,
        request: TaskOrderingRequest,
    ) -> tuple[ProjectRow, EpicRow | None, StoryRow | None]:
        project = self.repository.get_project(request.project_key)
        if project is None:
            raise UnknownScopeError(f"Unknown project key: {request.project_key}")
        epic: EpicRow | None = None
        if request.epic_key:
            epic = self.repository.get_epic(request.epic_key, project_id=project.id)
            if epic is None:
                raise UnknownScopeError(
                    f"Unknown epic key: {request.epic_key} for project {request.project_key}",
                )
        story: StoryRow | None = None
        if request.story_key:
            story = self.repository.get_story(
                request.story_key,
                project_id=project.id,
                epic_id=epic.id if epic else None,
            )
            if story is None:
                raise UnknownScopeError(
                    f"Unknown user story key: {request.story_key} "
                    f"for project {request.project_key}",
                )
        return project, epic, story

    def _apply_report(
        self,
        report: EdgeInjectionReport,
        tasks: Sequence[TaskRow],
        dependencies: dict[str, list[DependencyRow]],
        warnings: list[str],
        *,
        persist: bool,
    ) -> None:
        if persist and report.inserts:
            self.repository.insert_task_dependencies(report.inserts)
        merge_inserts(tasks, dependencies, report.inserts)
        warnings.extend(injection_warnings(report, persisted=persist))

    def _resolve_doc_context(self, project: ProjectRow, warnings: list[str]) -> DocContext | None:
        if self.docdex is None:
            return None
        return build_doc_context(self.docdex, project.key, warnings)

    def _resolve_agent(self, agent_name: str | None) -> AgentProfile:
        if self.router is None:
            raise RuntimeError("no agent router configured")
        return self.router.resolve_agent_for_command(COMMAND_NAME, agent_name)

    def _rank_with_agent(  # noqa: PLR0913
        self,
        agent: AgentProfile,
        initial_order: Sequence[TaskNode],
        impact: Mapping[str, DependencyImpact],
        *,
        request: TaskOrderingRequest,
        project: ProjectRow,
        epic: EpicRow | None,
        statuses: Sequence[str],
        doc_context: DocContext | None,
        warnings: list[str],
        run_id: str | None,
        job_id: str | None,
    ) -> dict[str, int] | None:
        prompt = build_ranking_prompt(
            initial_order,
            dict(impact),
            project=project,
            epic=epic,
            statuses=statuses,
            doc_context=doc_context,
        )
        output = self._invoke_agent(
            agent,
            prompt,
            stream=request.agent_stream,
            metadata={"command": COMMAND_NAME, "phase": "agent_ordering"},
        )
        prompt_tokens = estimate_tokens(prompt)
        completion_tokens = estimate_tokens(output)
        self._record_tokens(
            run_id=run_id,
            job_id=job_id,
            project_id=project.id,
            action="ordering_tasks",
            tokens_prompt=prompt_tokens,
            tokens_completion=completion_tokens,
            agent=agent,
            metadata={
                "adapter": agent.adapter,
                "epic_key": epic.key if epic else None,
                "story_key": request.story_key,
                "status_filter": list(statuses),
                "agent_slug": agent.slug,
                "model_name": agent.default_model,
                "phase": "agent_ordering",
                "attempt": 1,
            },
        )
        return parse_agent_ranking(output, initial_order, warnings)

    def _invoke_agent(
        self,
        agent: AgentProfile,
        prompt: str,
        *,
        stream: bool,
        metadata: dict[str, Any],
    ) -> str:
        if self.invoker is None:
            raise RuntimeError("no agent invoker configured")
        invocation = AgentInvocation(input=prompt, metadata=metadata)
        if stream:
            chunks: list[str] = []
            try:
                for chunk in self.invoker.invoke_stream(agent, invocation):
                    chunks.append(chunk.output)
                    self._emit_chunk(chunk.output)
            except (AgentInvocationError, OSError, UnicodeDecodeError) as error:
                logger.info("Agent stream failed (%s); retrying without streaming", error)
            else:
                return "".join(chunks)
        return self.invoker.invoke(agent, invocation).output

    def _emit_chunk(self, text: str) -> None:
        if self.stream_sink is not None:
            self.stream_sink(text)
        else:
            logger.debug("agent: %s", text.rstrip())

    def _record_tokens(  # noqa: PLR0913
        self,
        *,
        run_id: str | None,
        job_id: str | None,
        project_id: str,
        action: str,
        tokens_prompt: int,
        tokens_completion: int = 0,
        agent: AgentProfile | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if not self.record_telemetry or self.jobs is None or run_id is None:
            return
        self.jobs.record_token_usage(
            TokenUsageRecord(
                command_name=COMMAND_NAME,
                action=action,
                tokens_prompt=tokens_prompt,
                tokens_completion=tokens_completion,
                command_run_id=run_id,
                job_id=job_id,
                project_id=project_id,
                agent_id=agent.id if agent else None,
                model_name=agent.default_model if agent else None,
                metadata=metadata,
            ),
        )


def _map_result(
    ordered: Sequence[TaskNode],
    impact: Mapping[str, DependencyImpact],
    cycle_members: set[str],
    metadata_by_task: Mapping[str, dict[str, Any]] | None,
) -> list[TaskOrderItem]:
    items: list[TaskOrderItem] = []
    for index, node in enumerate(ordered):
        task = node.task
        metadata = task.metadata
        if metadata_by_task is not None and node.id in metadata_by_task:
            metadata = metadata_by_task[node.id]
        items.append(
            TaskOrderItem(
                task_id=task.id,
                task_key=task.key,
                title=task.title,
                status=task.status,
                story_points=task.story_points,
                priority=index + 1,
                epic_id=task.epic_id,
                epic_key=task.epic_key,
                story_id=task.story_id,
                story_key=task.story_key,
                story_title=task.story_title,
                dependency_keys=node.dependency_keys(),
                dependency_impact=impact.get(node.id, DependencyImpact()),
                cycle_detected=node.id in cycle_members,
                metadata=metadata,
            ),
        )
    return items
