import pytest

from helpers import make_op

from stagehand_automation.graph import CycleDetected, GraphError, UnknownDependency, build_graph


def test_order_respects_dependencies_and_declaration_order():
    ops = [
        make_op("deploy@web1", "web1", deps=["configure@web1"]),
        make_op("install@web1", "web1"),
        make_op("configure@web1", "web1", deps=["install@web1"]),
        make_op("install@db1", "db1"),
    ]

    graph = build_graph(ops)

    assert graph.order == ("install@web1", "configure@web1", "deploy@web1", "install@db1")
    assert graph.hosts == ["web1", "db1"]


def test_identical_input_yields_identical_order():
    ops = [make_op(f"op{i}@h{i % 3}", f"h{i % 3}") for i in range(12)]
    ops.append(make_op("last@h0", "h0", deps=["op0@h0", "op5@h2"]))

    assert build_graph(ops).order == build_graph(list(ops)).order


def test_cycle_names_the_operations_involved():
    ops = [
        make_op("a@h", "h", deps=["c@h"]),
        make_op("b@h", "h", deps=["a@h"]),
        make_op("c@h", "h", deps=["b@h"]),
        make_op("free@h", "h"),
    ]

    with pytest.raises(CycleDetected) as excinfo:
        build_graph(ops)

    cycle = excinfo.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a@h", "b@h", "c@h"}
    assert "dependency cycle" in str(excinfo.value)


def test_unknown_dependency_is_reported():
    with pytest.raises(UnknownDependency) as excinfo:
        build_graph([make_op("a@h", "h", deps=["ghost@h"])])

    assert excinfo.value.operation == "a@h"
    assert excinfo.value.missing == "ghost@h"


def test_duplicate_ids_rejected():
    with pytest.raises(GraphError):
        build_graph([make_op("a@h", "h"), make_op("a@h", "h")])


def test_dependents_and_pruning():
    graph = build_graph(
        [
            make_op("a@h", "h"),
            make_op("b@h", "h", deps=["a@h"]),
            make_op("c@h", "h", deps=["b@h"]),
            make_op("d@h", "h"),
        ]
    )

    assert graph.dependents_of("a@h") == ["b@h"]
    assert graph.transitive_dependents("a@h") == ["b@h", "c@h"]

    pruned = graph.without(["a@h"])
    assert "a@h" not in pruned
    assert pruned.dependencies_of("b@h") == set()
    assert pruned.order == ("b@h", "c@h", "d@h")
