import numpy as np
import pytest

import numdef
from numdef import ShapeOrTypeMismatch


def _record(fn, *args, **kwargs):
    return numdef.debug_expr(fn)(*args, **kwargs)


def test_ops_evaluate_eagerly_outside_definitions():
    x = np.array([[1.0, -2.0], [3.0, -4.0]], dtype=np.float32)
    np.testing.assert_allclose(numdef.abs(x), np.abs(x))
    np.testing.assert_allclose(numdef.sum(x, axes=0), [4.0, -6.0])
    np.testing.assert_allclose(numdef.where(x > 0, x, 0.0), [[1, 0], [3, 0]])
    assert numdef.dot(x, x).shape == (2, 2)
    assert numdef.shape(x) == (2, 2)
    assert numdef.rank(x) == 2
    assert numdef.size(x) == 4
    assert numdef.dtype(x) == np.float32
    assert numdef.shape(3.0) == ()


def test_eager_weak_scalars_keep_array_dtype():
    x = np.array([1, 2, 3], dtype=np.int8)
    assert numdef.add(x, 1).dtype == np.int8
    assert numdef.multiply(np.ones(2, dtype=np.float16), 2.0).dtype == np.float16
    assert numdef.add(x, 1.5).dtype.kind == "f"


def test_recorded_shapes_and_dtypes():
    @numdef.defn
    def shapes(x, y):
        return {
            "broadcast": x + y,
            "reduced": numdef.mean(x, axes=(0, 2), keepdims=True),
            "arg": numdef.argmax(x, axis=1),
            "reshaped": numdef.reshape(x, (-1, 4)),
            "expanded": numdef.new_axis(y, 0),
            "squeezed": numdef.squeeze(numdef.new_axis(y, -1)),
            "transposed": numdef.transpose(x, (2, 0, 1)),
            "matmul": x @ numdef.ones((4, 5)),
            "compare": x > y,
            "cast": numdef.as_type(x, "int32"),
            "joined": numdef.concatenate((x, x), axis=1),
            "indexed": x[0, ::-1, None],
        }

    x = np.zeros((2, 3, 4), dtype=np.float32)
    y = np.zeros((4,), dtype=np.float64)
    graph = _record(shapes, x, y)
    outputs = dict(zip(graph.output_tree.meta, graph.output_nodes()))
    expected = {
        "broadcast": ((2, 3, 4), "float64"),
        "reduced": ((1, 3, 1), "float32"),
        "arg": ((2, 4), np.dtype(np.intp).name),
        "reshaped": ((6, 4), "float32"),
        "expanded": ((1, 4), "float64"),
        "squeezed": ((4,), "float64"),
        "transposed": ((4, 2, 3), "float32"),
        "matmul": ((2, 3, 5), "float32"),
        "compare": ((2, 3, 4), "bool"),
        "cast": ((2, 3, 4), "int32"),
        "joined": ((2, 6, 4), "float32"),
        "indexed": ((3, 1, 4), "float32"),
    }
    for name, (shape, dtype) in expected.items():
        assert (outputs[name].shape, outputs[name].dtype) == (shape, dtype), name


def test_recorded_ops_match_numpy():
    @numdef.defn
    def mixed(x):
        y = numdef.tanh(x) * 2 - numdef.sigmoid(x)
        z = numdef.where(x > 0, numdef.sqrt(numdef.abs(x)), numdef.exp(x))
        return y + z, numdef.reduce_max(x, axes=-1), numdef.argmin(x, axis=0)

    rng = np.random.default_rng(7)
    x = rng.normal(size=(3, 4)).astype(np.float32)
    y, top, low = mixed(x)

    expected_y = np.tanh(x) * 2 - 1 / (1 + np.exp(-x))
    expected_z = np.where(x > 0, np.sqrt(np.abs(x)), np.exp(x))
    np.testing.assert_allclose(y, expected_y + expected_z, rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(top, x.max(axis=-1))
    np.testing.assert_array_equal(low, x.argmin(axis=0))
    assert y.dtype == np.float32


def test_weak_literals_do_not_widen_recorded_dtypes():
    @numdef.defn
    def scaled(x):
        return x * 3 + 0.5

    graph = _record(scaled, np.zeros(2, dtype=np.float16))
    assert graph.output_nodes()[0].dtype == "float16"
    weak = [node for node in graph.nodes if node.weak]
    assert len(weak) == 2


@pytest.mark.parametrize(
    "build, match",
    [
        (lambda x: x + numdef.ones((3,)), "cannot be broadcast"),
        (lambda x: x @ numdef.ones((3, 2)), "contraction dimensions"),
        (lambda x: numdef.reshape(x, (5, -1)), "cannot reshape"),
        (lambda x: numdef.squeeze(x, 0), "expected 1"),
        (lambda x: numdef.sum(x, axes=4), "out of range"),
        (lambda x: numdef.transpose(x, (0, 0)), "not a permutation"),
        (lambda x: numdef.broadcast_to(x, (2,)), "cannot broadcast"),
        (lambda x: x[5], "out of bounds"),
        (lambda x: numdef.as_type(x, "U8"), "Unsupported dtype"),
    ],
    ids=["broadcast", "dot", "reshape", "squeeze", "axis", "transpose", "broadcast_to", "index", "dtype"],
)
def test_shape_errors_raise_while_recording(build, match):
    @numdef.deftransform
    def apply(x):
        return build(x)

    @numdef.defn
    def bad(x):
        return apply(x)

    with pytest.raises(ShapeOrTypeMismatch, match=match):
        bad(np.zeros((2, 4), dtype=np.float32))


def test_dynamic_indices_are_rejected():
    @numdef.deftransform
    def take(x, index):
        return x[index]

    @numdef.defn
    def bad(x):
        return take(x, numdef.tensor(1))

    with pytest.raises(ShapeOrTypeMismatch, match="static integers"):
        bad(np.zeros(3, dtype=np.float32))


def test_concatenate_requires_a_sequence():
    with pytest.raises(ShapeOrTypeMismatch, match="sequence of tensors"):
        numdef.concatenate(np.zeros(3))


def test_handle_methods_mirror_functions():
    @numdef.defn
    def methods(x):
        return (
            x.sum(axis=1),
            x.mean(),
            x.max(axis=0, keepdims=True),
            x.min(),
            x.argmax(axis=1),
            x.reshape(4, 2),
            x.T,
            x.astype("float64"),
            -x,
            abs(x),
            x ** 2,
            x % 3,
            1 - x,
            2 / (x + 1),
        )

    x = np.arange(8, dtype=np.float32).reshape(2, 4)
    results = methods(x)
    expected = (
        x.sum(axis=1),
        x.mean(),
        x.max(axis=0, keepdims=True),
        x.min(),
        x.argmax(axis=1),
        x.reshape(4, 2),
        x.T,
        x.astype("float64"),
        -x,
        abs(x),
        x ** 2,
        x % 3,
        1 - x,
        2 / (x + 1),
    )
    for got, want in zip(results, expected):
        np.testing.assert_allclose(got, want, rtol=1e-6)
        assert got.shape == np.shape(want)
    assert results[7].dtype == np.float64


def test_logical_operators():
    @numdef.defn
    def logic(a, b):
        return (a > 0) & (b > 0), (a > 0) | (b > 0), ~(a > 0), numdef.logical_not(b)

    a = np.array([1.0, -1.0, 2.0], dtype=np.float32)
    b = np.array([True, True, False])
    both, either, neg_a, not_b = logic(a, b)
    np.testing.assert_array_equal(both, [True, False, False])
    np.testing.assert_array_equal(either, [True, True, True])
    np.testing.assert_array_equal(neg_a, [False, True, False])
    np.testing.assert_array_equal(not_b, [False, False, True])
