import logging
from pathlib import Path

import numpy as np
import pytest

import numdef
from numdef import DefinitionMode, RestrictedSyntaxError
from numdef.core.classifier import classify, clear_classification_cache

SOURCE_LINES = Path(__file__).read_text(encoding="utf-8").splitlines()


@numdef.deftransform
def axis_count(x):
    return len(x.shape)


def _rejected(fn, match):
    with pytest.raises(RestrictedSyntaxError, match=match) as info:
        numdef.defn(fn)
    return info.value


# Accepted bodies ----------------------------------------------------------------


def test_branching_on_metadata_and_static_options_is_allowed():
    def f(x, y, *, mode="sum"):
        if x.ndim == 2 and len(x) > 1:
            x = x.T
        if numdef.rank(y) == 0:
            y = numdef.broadcast_to(y, x.shape)
        if x.dtype == np.float32:
            x = x * 2.0
        if mode == "sum":
            return x + y
        return x - y if mode == "diff" else x * y

    definition = numdef.defn(f)
    assert definition.classification.tensor_params == ("x", "y")
    assert definition.classification.static_params == ("mode",)
    assert definition.classification.source_checked

    x = np.ones((3, 2), dtype=np.float32)
    y = np.float32(1.0)
    np.testing.assert_allclose(definition(x, y), np.full((2, 3), 3.0))
    np.testing.assert_allclose(definition(x, y, mode="prod"), np.full((2, 3), 2.0))


def test_static_loops_and_transform_results_are_allowed():
    def f(x):
        total = numdef.zeros(x.shape[1:])
        for i in range(x.shape[0]):
            total = total + x[i]
        if axis_count(x) > 1:
            total = total / x.shape[0]
        return total

    definition = numdef.defn(f)
    x = np.arange(6, dtype=np.float32).reshape(3, 2)
    np.testing.assert_allclose(definition(x), x.mean(axis=0))


def test_comprehension_over_static_range_is_allowed():
    def f(x):
        parts = tuple(x[i] * (i + 1) for i in range(x.shape[0]))
        return numdef.concatenate(parts, axis=0)

    definition = numdef.defn(f)
    x = np.ones((2, 3), dtype=np.float32)
    np.testing.assert_allclose(definition(x), [1, 1, 1, 2, 2, 2])


def test_transforms_are_not_restricted():
    def t(values):
        out = []
        i = 0
        while i < len(values):
            try:
                out.append(int(values[i]))
            except ValueError:
                out.append(0)
            i += 1
        return out

    transform = numdef.deftransform(t)
    assert transform.mode is DefinitionMode.TRANSFORM
    assert transform(["1", "x", "3"]) == [1, 0, 3]


def test_private_transform_flag():
    @numdef.deftransformp
    def hidden(x):
        return x

    assert hidden.private
    assert hidden.classification.private
    assert repr(hidden).startswith("<deftransformp")


# Rejected bodies ----------------------------------------------------------------


def test_rejects_if_on_tensor_value():
    def f(x):
        if x > 0:
            return x
        return -x

    _rejected(f, "if condition depends on a tensor value")


def test_rejects_conditional_expression_on_tensor_value():
    def f(x):
        return x if numdef.sum(x) > 0 else -x

    _rejected(f, "conditional expression")


def test_rejects_tensor_derived_names():
    def f(x):
        y = x * 2
        z = y + 1
        assert z
        return z

    _rejected(f, "assert condition")


def test_rejects_augmented_assignment_taint():
    def f(x, *, bias=1.0):
        y = bias
        y += x
        if y:
            return y
        return x

    _rejected(f, "if condition")


@pytest.mark.parametrize(
    "source_kind",
    ["and", "not", "chained", "in"],
)
def test_rejects_python_logic_on_tensors(source_kind):
    def f_and(x, y):
        return x and y

    def f_not(x):
        return not x

    def f_chained(x):
        return 0 < x < 1

    def f_in(x):
        return 1 in x

    fn = {"and": f_and, "not": f_not, "chained": f_chained, "in": f_in}[source_kind]
    _rejected(fn, "tensor")


def test_rejects_iteration_over_tensor():
    def f(x):
        total = 0
        for row in x:
            total = total + row
        return total

    _rejected(f, "for loop iterable")


def test_rejects_comprehension_over_tensor():
    def f(x):
        return tuple(v * 2 for v in x)

    _rejected(f, "comprehension iterable")


def test_rejects_tensor_index():
    def f(x, i):
        return x[i]

    _rejected(f, "index depends on a tensor value")


def test_rejects_tensor_in_fstring():
    def f(x):
        label = f"value={x}"
        return x

    _rejected(f, "string formatting")


@pytest.mark.parametrize(
    "kind, match",
    [
        ("while", "while loops"),
        ("try", "try statements"),
        ("raise", "raise statements"),
        ("import", "imports"),
        ("lambda", "lambda expressions"),
        ("nested", "nested function definitions"),
        ("setitem", "item and attribute assignment"),
    ],
)
def test_rejects_host_only_statements(kind, match):
    def f_while(x):
        while True:
            x = x + 1
        return x

    def f_try(x):
        try:
            return x + 1
        except ValueError:
            return x

    def f_raise(x):
        if x.shape[0] == 0:
            raise ValueError("empty")
        return x

    def f_import(x):
        import math

        return x * math.pi

    def f_lambda(x):
        double = lambda v: v * 2  # noqa: E731
        return double(x)

    def f_nested(x):
        def inner(v):
            return v

        return inner(x)

    def f_setitem(x):
        x[0] = 1
        return x

    fn = {
        "while": f_while,
        "try": f_try,
        "raise": f_raise,
        "import": f_import,
        "lambda": f_lambda,
        "nested": f_nested,
        "setitem": f_setitem,
    }[kind]
    _rejected(fn, match)


def test_rejects_variadic_parameters():
    def f(*xs):
        return xs[0]

    _rejected(f, "variadic parameter 'xs'")


def test_error_points_at_offending_source_line():
    def f(x):
        y = x + 1
        while True:
            y = y * 2
        return y

    err = _rejected(f, "while loops")
    assert err.line_text.strip() == "while True:"
    assert SOURCE_LINES[err.line - 1] == err.line_text
    assert err.column == err.line_text.index("while") + 1
    assert "^" in str(err)


# Caching and fallbacks ----------------------------------------------------------


def test_classification_is_cached_per_function_object():
    def f(x):
        return x + 1

    first = classify(f, DefinitionMode.GRAPH)
    assert classify(f, DefinitionMode.GRAPH) is first
    assert classify(f, DefinitionMode.TRANSFORM) is not first
    clear_classification_cache()
    again = classify(f, DefinitionMode.GRAPH)
    assert again is not first
    assert again == first


def _branch_on(helper):
    def body(x):
        if helper(x) > 0:
            return x
        return -x

    return body


def test_closures_of_one_factory_are_classified_separately():
    @numdef.deftransform
    def width(x):
        return x.shape[0]

    @numdef.defn
    def total(x):
        return numdef.sum(x)

    accepted = numdef.defn(_branch_on(width))
    assert accepted.classification.source_checked
    np.testing.assert_allclose(accepted(np.ones(2, dtype=np.float32)), [1.0, 1.0])

    err = _rejected(_branch_on(total), "if condition depends on a tensor value")
    assert err.line_text.strip() == "if helper(x) > 0:"


def test_classification_cache_keeps_private_flag():
    def helper(x):
        return x

    assert not classify(helper, DefinitionMode.TRANSFORM).private
    assert classify(helper, DefinitionMode.TRANSFORM, private=True).private
    assert numdef.deftransformp(helper).classification.private
    assert not numdef.deftransform(helper).classification.private


def test_lambdas_are_accepted_and_checked():
    double = numdef.jit(lambda x: x * 2)
    np.testing.assert_allclose(double(np.ones(3, dtype=np.float32)), [2.0, 2.0, 2.0])
    assert double.definition.classification.source_checked

    with pytest.raises(RestrictedSyntaxError, match="conditional expression"):
        numdef.defn(lambda x: x if x > 0 else -x)


def test_ambiguous_lambda_source_skips_static_pass(caplog):
    with caplog.at_level(logging.WARNING, logger="numdef.core.classifier"):
        first, second = numdef.defn(lambda x: x + 1), numdef.defn(lambda x: x - 1)
    assert not first.classification.source_checked
    assert any("Cannot locate the lambda" in record.getMessage() for record in caplog.records)
    np.testing.assert_allclose(second(np.zeros(2, dtype=np.float32)), [-1.0, -1.0])


def test_missing_source_skips_static_pass_and_runtime_guard_still_applies(caplog):
    namespace = {}
    code = compile(
        "def generated(x):\n    if x > 0:\n        return x\n    return -x\n",
        "<generated>",
        "exec",
    )
    exec(code, namespace)

    with caplog.at_level(logging.WARNING, logger="numdef.core.classifier"):
        definition = numdef.defn(namespace["generated"])
    assert not definition.classification.source_checked
    assert any("unavailable" in record.getMessage() for record in caplog.records)

    with pytest.raises(RestrictedSyntaxError, match="truth value"):
        definition(np.ones(3, dtype=np.float32))
