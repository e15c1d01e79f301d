from __future__ import annotations

import allure

from backlog_planner.models import DependencyRow
from backlog_planner.ordering.graph import build_task_nodes, compute_dependency_impact
from backlog_planner.ordering.scheduler import (
    SchedulingContext,
    build_stage_order_map,
    topological_sort,
)

pytestmark = [
    allure.epic("Task Ordering"),
    allure.feature("Topological Scheduler"),
]


def _edge(task, target) -> DependencyRow:
    return DependencyRow(
        task_id=task.id,
        depends_on_task_id=target.id,
        depends_on_key=target.key,
        depends_on_status=target.status,
    )


def _schedule(tasks, dependencies, **context):
    graph = build_task_nodes(tasks, dependencies)
    impact = compute_dependency_impact(graph.dependents)
    ctx = SchedulingContext(impact=impact, **context)
    return topological_sort(graph.nodes, graph.dependents, ctx)


def test_chain_orders_dependencies_first_and_breaks_ties_by_age(task_factory) -> None:
    a, b, c, d = (task_factory(key) for key in "ABCD")
    dependencies = {a.id: [_edge(a, b)], b.id: [_edge(b, c)]}

    result = _schedule([a, b, c, d], dependencies)

    assert [node.key for node in result.ordered] == ["C", "B", "A", "D"]
    assert not result.cycle


def test_no_dependency_is_placed_after_its_dependent(task_factory) -> None:
    tasks = [task_factory(f"T{index}") for index in range(8)]
    dependencies = {
        tasks[0].id: [_edge(tasks[0], tasks[5]), _edge(tasks[0], tasks[7])],
        tasks[2].id: [_edge(tasks[2], tasks[0])],
        tasks[3].id: [_edge(tasks[3], tasks[2]), _edge(tasks[3], tasks[6])],
        tasks[6].id: [_edge(tasks[6], tasks[1])],
    }

    result = _schedule(tasks, dependencies)
    position = {node.id: index for index, node in enumerate(result.ordered)}

    for task_id, rows in dependencies.items():
        for row in rows:
            assert position[row.depends_on_task_id] < position[task_id]


def test_cycle_members_are_kept_and_flagged(task_factory) -> None:
    a, b, c = task_factory("A"), task_factory("B"), task_factory("C")
    dependencies = {a.id: [_edge(a, b)], b.id: [_edge(b, a)]}

    result = _schedule([a, b, c], dependencies)

    assert result.cycle
    assert result.cycle_members == {a.id, b.id}
    assert [node.key for node in result.ordered] == ["C", "A", "B"]


def test_epic_priority_outranks_impact(task_factory) -> None:
    urgent = task_factory("URGENT", epic_priority=1)
    other = task_factory("OTHER", epic_priority=2)
    child = task_factory("CHILD", epic_priority=2)
    dependencies = {child.id: [_edge(child, other)]}

    result = _schedule([other, child, urgent], dependencies)

    assert [node.key for node in result.ordered] == ["URGENT", "OTHER", "CHILD"]


def test_stage_order_and_foundation_flag(task_factory) -> None:
    ui = task_factory("UI", title="Render product page", description="css layout")
    api = task_factory("API", title="Build checkout endpoint")
    setup = task_factory("SETUP", title="Scaffold repository", type="chore")

    default = _schedule([ui, api, setup], {})
    frontend_first = _schedule(
        [ui, api, setup],
        {},
        stage_order=build_stage_order_map(["frontend", "backend"]),
    )

    assert [node.key for node in default.ordered] == ["SETUP", "API", "UI"]
    assert [node.key for node in frontend_first.ordered] == ["SETUP", "UI", "API"]


def test_agent_rank_breaks_ties_without_violating_dependencies(task_factory) -> None:
    a, b, c = task_factory("A"), task_factory("B"), task_factory("C")
    dependencies = {a.id: [_edge(a, c)]}

    result = _schedule(
        [a, b, c],
        dependencies,
        agent_rank={b.id: 0, a.id: 1, c.id: 2},
    )

    assert [node.key for node in result.ordered] == ["C", "B", "A"]


def test_unknown_stages_fall_back_to_default_order() -> None:
    assert build_stage_order_map(["bogus"]) == {
        "foundation": 0,
        "backend": 1,
        "frontend": 2,
        "other": 3,
    }
    assert build_stage_order_map(["backend", "bogus", "frontend"]) == {
        "backend": 0,
        "frontend": 2,
    }
