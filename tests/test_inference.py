from __future__ import annotations

import json

import allure

from backlog_planner.models import DependencyRow, RelationType
from backlog_planner.ordering.inference import (
    InferredDependency,
    apply_inferred_dependencies,
    inject_foundation_dependencies,
    injection_warnings,
    merge_inserts,
    parse_dependency_inference_output,
)

pytestmark = [
    allure.epic("Task Ordering"),
    allure.feature("Dependency Inference"),
]


def _edge(task, target) -> DependencyRow:
    return DependencyRow(
        task_id=task.id,
        depends_on_task_id=target.id,
        depends_on_key=target.key,
        depends_on_status=target.status,
    )


def test_foundation_injection_is_idempotent(task_factory) -> None:
    setup = task_factory("SETUP", title="Initialize project scaffold")
    api = task_factory("API", title="Add orders endpoint")
    ui = task_factory("UI", title="Render orders page")
    tasks = [setup, api, ui]
    dependencies: dict[str, list[DependencyRow]] = {}

    first = inject_foundation_dependencies(tasks, dependencies)
    merge_inserts(tasks, dependencies, first.inserts)
    second = inject_foundation_dependencies(tasks, dependencies)

    assert sorted((edge.task_id, edge.depends_on_task_id) for edge in first.inserts) == [
        (api.id, setup.id),
        (ui.id, setup.id),
    ]
    assert {edge.relation_type for edge in first.inserts} == {
        RelationType.INFERRED_FOUNDATION.value,
    }
    assert second.inserts == []
    assert second.skipped_cycles == 0


def test_foundation_injection_never_closes_a_cycle(task_factory) -> None:
    setup = task_factory("SETUP", title="Configure build", type="chore")
    api = task_factory("API", title="Add orders endpoint")
    dependencies = {setup.id: [_edge(setup, api)]}

    report = inject_foundation_dependencies([setup, api], dependencies)

    assert report.inserts == []
    assert report.skipped_cycles == 1
    assert report.skipped_samples == ["API->SETUP"]
    assert injection_warnings(report, persisted=True) == [
        "Skipped 1 inferred foundation deps due to cycles. Sample: API->SETUP",
    ]


def test_explicit_metadata_overrides_keyword_classification(task_factory) -> None:
    setup = task_factory("SETUP", title="Setup CI", metadata={"stage": "backend"})
    api = task_factory("API", title="Add orders endpoint")

    report = inject_foundation_dependencies([setup, api], {})

    assert report.inserts == []


def test_injection_warnings_for_dry_run_and_applied(task_factory) -> None:
    setup = task_factory("SETUP", title="Install tooling")
    api = task_factory("API", title="Add orders endpoint")
    report = inject_foundation_dependencies([setup, api], {})

    assert injection_warnings(report, persisted=True) == ["Injected 1 inferred foundation deps."]
    assert injection_warnings(report, persisted=False) == [
        "Dry run: inferred 1 foundation deps (not persisted).",
    ]


def test_applied_agent_dependencies_skip_cycles(task_factory) -> None:
    a, b, c = task_factory("A"), task_factory("B"), task_factory("C")
    dependencies = {b.id: [_edge(b, a)]}

    report = apply_inferred_dependencies(
        [a, b, c],
        dependencies,
        [
            InferredDependency(task_key="A", depends_on_keys=["B", "C"]),
            InferredDependency(task_key="C", depends_on_keys=["B"]),
        ],
    )

    assert [(edge.task_id, edge.depends_on_task_id) for edge in report.inserts] == [
        (a.id, c.id),
    ]
    assert report.skipped_cycles == 2
    assert injection_warnings(report, persisted=True) == [
        "Applied 1 inferred agent deps.",
        "Skipped 2 inferred agent deps due to cycles. Sample: A->B, C->B",
    ]


def test_invalid_task_keys_are_reported_once_with_count() -> None:
    warnings: list[str] = []
    output = json.dumps(
        {
            "dependencies": [
                {"task_key": "NOPE-1", "depends_on": ["A"]},
                {"task_key": "NOPE-2", "depends_on": ["A"]},
                {"task_key": "NOPE-3", "depends_on": ["A"]},
                {"task_key": "B", "depends_on": ["A"]},
            ],
        },
    )

    inferred = parse_dependency_inference_output(output, {"A", "B"}, warnings)

    assert inferred == [InferredDependency(task_key="B", depends_on_keys=["A"])]
    assert warnings == ["Agent dependency inference ignored 3 invalid task keys."]


def test_inference_output_counts_bad_dependencies_and_self_edges() -> None:
    warnings: list[str] = []
    output = (
        "Sure!\n```json\n"
        '{"deps": [{"taskKey": "A", "dependsOn": ["A", "Z", 7, "B", "B"]}]}'
        "\n```"
    )

    inferred = parse_dependency_inference_output(output, {"A", "B"}, warnings)

    assert inferred == [InferredDependency(task_key="A", depends_on_keys=["B"])]
    assert warnings == [
        "Agent dependency inference ignored 2 invalid dependency keys.",
        "Agent dependency inference ignored 1 self-dependencies.",
    ]


def test_unparsable_inference_output_is_a_warning() -> None:
    warnings: list[str] = []

    assert parse_dependency_inference_output("no idea", {"A"}, warnings) == []
    assert warnings == ["Agent dependency inference output could not be parsed; skipping."]
