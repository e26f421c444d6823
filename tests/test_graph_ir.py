import threading

import numpy as np
import pytest

import numdef
from numdef import Graph, RestrictedSyntaxError, SessionError
from numdef.core.tree import flatten, tree_map, unflatten


@numdef.deftransform
def ramp(x):
    return np.arange(x.size, dtype=np.float32).reshape(x.shape)


@numdef.defn
def ramped(x, y):
    return x * ramp(x) + y, numdef.sum(x)


def _graph():
    return numdef.debug_expr(ramped)(
        numdef.template((2, 2), "float32"), numdef.template((), "float32")
    )


def test_graph_structure_and_invariants():
    graph = _graph()
    graph.validate()
    assert [graph.nodes[i].op for i in graph.parameters] == ["parameter", "parameter"]
    for node in graph.nodes:
        assert all(src < node.id for src in node.inputs)
    assert graph.output_tree.describe() == "(*, *)"
    assert graph.input_tree.describe() == "(*, *)"
    assert [node.shape for node in graph.output_nodes()] == [(2, 2), ()]


def test_validate_rejects_forward_references():
    graph = _graph()
    graph.nodes[-1].inputs = (len(graph.nodes) + 3,)
    with pytest.raises(SessionError, match="not acyclic"):
        graph.validate()

    with pytest.raises(SessionError, match="was not recorded before"):
        Graph(name="bad").add_node("negate", (0,), (), "float32")


def test_explain_and_digest():
    first = _graph()
    second = _graph()
    assert first.digest() == second.digest()
    assert len(first.digest()) == 64

    text = first.explain()
    assert text.splitlines()[0] == "graph ramped"
    assert "parameter" in text and "index=1" in text
    assert "transform=ramp" in text
    assert "value=[0.0, 1.0, 2.0, 3.0]" in text
    assert text.splitlines()[-1].startswith("  return %")

    data = first.explain(json=True)
    injected = [node for node in data["nodes"] if node["attrs"].get("origin") == "transform"]
    assert injected[0]["value"] == [[0.0, 1.0], [2.0, 3.0]]
    assert data["outputs"] == first.outputs


def test_unused_nodes_are_not_scheduled():
    @numdef.defn
    def partial(x):
        unused = numdef.exp(x)
        return x + 1

    graph = numdef.debug_expr(partial)(np.zeros(2, dtype=np.float32))
    live_ops = [node.op for node in graph.live_nodes()]
    assert "exp" in [node.op for node in graph.nodes]
    assert "exp" not in live_ops


def test_compiled_function_checks_signature():
    compiled = numdef.compile(ramped, numdef.template((2, 2)), numdef.template(()))
    out, total = compiled(np.ones((2, 2), dtype=np.float32), np.float32(1))
    np.testing.assert_allclose(out, [[1, 2], [3, 4]])
    assert total == 4
    assert "ramped(float32[2, 2], float32[])" in repr(compiled)

    with pytest.raises(numdef.ShapeOrTypeMismatch, match="compiled for float32\\[2, 2\\]"):
        compiled(np.ones((3, 2), dtype=np.float32), np.float32(1))
    with pytest.raises(numdef.ShapeOrTypeMismatch, match="compiled for arguments"):
        compiled((np.ones((2, 2), dtype=np.float32),), np.float32(1))

    text = compiled.explain()
    assert text.startswith("# compiler: evaluator")
    assert "[node 000] parameter" in text


def test_concurrent_runs_leave_one_complete_log():
    compiled = numdef.compile(ramped, numdef.template((2, 2)), numdef.template(()))
    runner = compiled.entry.executable
    barrier = threading.Barrier(4)

    def worker():
        barrier.wait()
        for _ in range(50):
            compiled(np.ones((2, 2), dtype=np.float32), np.float32(1))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    expected = [node.id for node in compiled.graph.live_nodes()]
    assert [entry["id"] for entry in runner.logs] == expected


def test_restricted_syntax_error_renders_caret():
    err = RestrictedSyntaxError("bad", line=3, column=5, line_text="    if x:")
    assert str(err) == "bad (line 3, col 5)\n      if x:\n      ^"
    assert str(RestrictedSyntaxError("plain")) == "plain"
    assert isinstance(err, ValueError)


def test_tree_round_trip_keeps_containers():
    from collections import namedtuple

    Pair = namedtuple("Pair", "left right")
    tree = {"a": (1, [2, 3]), "b": Pair(4, {"c": 5})}
    leaves, treedef = flatten(tree)
    assert leaves == [1, 2, 3, 4, 5]
    assert unflatten(treedef, leaves) == tree
    assert tree_map(lambda v: v * 10, tree)["b"].right == {"c": 50}
    assert treedef.num_leaves == 5
    with pytest.raises(ValueError, match="Too many leaves"):
        unflatten(treedef, leaves + [6])
