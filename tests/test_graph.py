from __future__ import annotations

import allure
import pytest

from context_relay.orchestrator.errors import GraphError, GraphErrorKind
from context_relay.orchestrator.graph import TaskGraphBuilder, topological_order
from context_relay.orchestrator.models import Budget

pytestmark = [
    allure.epic("Planning"),
    allure.feature("Task Graph Construction"),
]


def _build(resources, edges=(), *, max_resources: int = 5, costs=None, task_id: str = "t1"):
    budget = Budget(
        max_resources_per_subtask=max_resources,
        soft_threshold=50,
        hard_threshold=100,
        post_compaction_baseline=10,
    )
    return TaskGraphBuilder().build(
        "refactor",
        resources,
        edges,
        budget,
        task_id=task_id,
        resource_costs=costs,
    )


def _subtask_for(graph, resource: str):
    return next(subtask for subtask in graph.subtasks if resource in subtask.resources)


def test_unrelated_resources_are_chunked_in_lexicographic_order() -> None:
    resources = [f"r{index:02d}" for index in range(12, 0, -1)]

    graph = _build(resources)

    assert [len(subtask.resources) for subtask in graph.subtasks] == [5, 5, 2]
    assert graph.subtasks[0].resources == ("r01", "r02", "r03", "r04", "r05")
    assert graph.subtasks[2].resources == ("r11", "r12")
    assert [subtask.subtask_id for subtask in graph.subtasks] == ["t1.s1", "t1.s2", "t1.s3"]
    assert all(not subtask.depends_on for subtask in graph.subtasks)


def test_subtasks_partition_the_resource_set_exactly() -> None:
    resources = ["src/a.py", "src/b.py", "src/c.py", "docs/x.md", "docs/y.md", "setup.cfg"]
    edges = [("src/a.py", "docs/x.md"), ("src/b.py", "src/c.py")]

    graph = _build(resources, edges, max_resources=2)

    covered = [resource for subtask in graph.subtasks for resource in subtask.resources]
    assert sorted(covered) == sorted(resources)
    assert len(covered) == len(set(covered))
    assert all(1 <= len(subtask.resources) <= 2 for subtask in graph.subtasks)


def test_identical_input_yields_identical_plan() -> None:
    resources = [f"pkg/m{index}.py" for index in range(9)]
    edges = [("pkg/m0.py", "pkg/m3.py"), ("pkg/m3.py", "pkg/m7.py"), ("pkg/m1.py", "pkg/m2.py")]

    first = _build(resources, edges, max_resources=3)
    second = _build(list(reversed(resources)), list(reversed(edges)), max_resources=3)

    assert first.subtasks == second.subtasks
    assert first.task == second.task


def test_duplicate_resources_are_collapsed() -> None:
    graph = _build(["a", "b", "a", "b"])

    assert graph.task.resources == ("a", "b")
    assert graph.subtasks[0].resources == ("a", "b")


def test_long_chain_is_cut_along_dependency_order() -> None:
    resources = ["a", "b", "c", "d", "e", "f", "g"]
    edges = [("g", "f"), ("f", "e"), ("e", "d"), ("d", "c"), ("c", "b"), ("b", "a")]

    graph = _build(resources, edges, max_resources=3)

    assert [subtask.resources for subtask in graph.subtasks] == [
        ("g", "f", "e"),
        ("d", "c", "b"),
        ("a",),
    ]
    assert graph.subtasks[0].depends_on == ()
    assert graph.subtasks[1].depends_on == ("t1.s1",)
    assert graph.subtasks[2].depends_on == ("t1.s2",)


def test_small_connected_component_stays_in_one_subtask() -> None:
    graph = _build(["a", "b", "c"], [("b", "a")], max_resources=8)

    assert len(graph.subtasks) == 1
    assert graph.subtasks[0].resources == ("b", "a", "c")
    assert graph.subtasks[0].depends_on == ()


def test_resources_are_grouped_by_directory_affinity() -> None:
    graph = _build(["src/b.py", "docs/x.md", "src/a.py"], max_resources=8)

    assert [subtask.resources for subtask in graph.subtasks] == [
        ("docs/x.md",),
        ("src/a.py", "src/b.py"),
    ]


def test_oversized_resource_gets_its_own_flagged_subtask() -> None:
    graph = _build(["a", "big", "c"], costs={"a": 5, "big": 51, "c": 5}, max_resources=8)

    big = _subtask_for(graph, "big")
    assert big.resources == ("big",)
    assert big.oversized is True
    assert _subtask_for(graph, "a").oversized is False
    assert _subtask_for(graph, "a").resources == ("a", "c")


def test_cost_equal_to_soft_threshold_is_not_oversized() -> None:
    graph = _build(["a", "b"], costs={"a": 50}, max_resources=8)

    assert len(graph.subtasks) == 1
    assert graph.subtasks[0].oversized is False


def test_oversized_resource_inside_dependency_chain_keeps_order() -> None:
    graph = _build(
        ["a", "big", "c"],
        [("a", "big"), ("big", "c")],
        costs={"big": 500},
        max_resources=8,
    )

    assert [subtask.resources for subtask in graph.subtasks] == [("a",), ("big",), ("c",)]
    assert _subtask_for(graph, "big").depends_on == (_subtask_for(graph, "a").subtask_id,)
    assert _subtask_for(graph, "c").depends_on == (_subtask_for(graph, "big").subtask_id,)


def test_cycle_is_rejected_with_offending_resources() -> None:
    with pytest.raises(GraphError) as error_info:
        _build(["a", "b", "c"], [("a", "b"), ("b", "a")])

    assert error_info.value.kind == GraphErrorKind.CYCLIC
    assert error_info.value.resources == ("a", "b")


def test_self_loop_is_rejected() -> None:
    with pytest.raises(GraphError) as error_info:
        _build(["a"], [("a", "a")])

    assert error_info.value.kind == GraphErrorKind.CYCLIC


def test_empty_resource_set_is_rejected() -> None:
    with pytest.raises(GraphError) as error_info:
        _build([])

    assert error_info.value.kind == GraphErrorKind.EMPTY


def test_edge_to_unknown_resource_is_rejected() -> None:
    with pytest.raises(GraphError) as error_info:
        _build(["a"], [("a", "missing")])

    assert error_info.value.kind == GraphErrorKind.UNKNOWN_RESOURCE
    assert error_info.value.resources == ("missing",)


def test_topological_order_breaks_ties_by_lowest_id() -> None:
    order = topological_order(["c", "b", "a", "d"], [("c", "a")])

    assert order == ["b", "c", "a", "d"]
