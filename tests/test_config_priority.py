import sys

import numpy as np
import pytest

import numdef
from numdef import CompilationError, CompilerConfig
from numdef.core.evaluator_numpy import compile as evaluator_compile

_seen = []


def _tagging(tag):
    def compile_fn(graph, templates, config):
        _seen.append((tag, config))
        return evaluator_compile(graph, templates, config)

    compile_fn.__qualname__ = f"tagging_{tag}"
    return compile_fn


for _tag in ("env", "default", "module", "decorator", "call"):
    numdef.register_compiler(f"tag_{_tag}", _tagging(_tag))


@numdef.defn
def plain(x):
    return x + 1


@numdef.defn(compiler="tag_decorator", alpha=1)
def decorated(x):
    return x * 2


def _compiler_of(fn, **options):
    compiled = numdef.compile(fn, numdef.template((2,), "float32"), **options)
    return compiled.config


@pytest.fixture
def module_options(monkeypatch):
    def set_options(**options):
        monkeypatch.setattr(sys.modules[__name__], "__numdef_options__", options, raising=False)

    return set_options


def test_builtin_fallback_is_the_evaluator():
    config = _compiler_of(plain)
    assert config.compiler == "evaluator"
    assert config.device == "auto"
    assert "evaluator" in numdef.registered_compilers()


def test_environment_seeds_process_defaults(monkeypatch):
    monkeypatch.setenv("NUMDEF_COMPILER", "tag_env")
    monkeypatch.setenv("NUMDEF_DEVICE", "cpu")
    numdef.reset_default_options()
    assert numdef.default_options() == {"compiler": "tag_env", "device": "cpu"}
    config = _compiler_of(plain)
    assert (config.compiler, config.device) == ("tag_env", "cpu")


def test_set_default_options_overrides_environment(monkeypatch):
    monkeypatch.setenv("NUMDEF_COMPILER", "tag_env")
    numdef.reset_default_options()
    previous = numdef.set_default_options(compiler="tag_default")
    assert previous == {"compiler": "tag_env"}
    assert _compiler_of(plain).compiler == "tag_default"

    numdef.set_default_options(compiler=None)
    assert "compiler" not in numdef.default_options()
    assert _compiler_of(plain).compiler == "evaluator"


def test_priority_call_over_decorator_over_module_over_default(module_options):
    numdef.set_default_options(compiler="tag_default", beta="default")
    assert _compiler_of(plain).compiler == "tag_default"

    module_options(compiler="tag_module", device="cpu", beta="module")
    config = _compiler_of(plain)
    assert (config.compiler, config.device) == ("tag_module", "cpu")
    assert config.backend_options == {"beta": "module"}

    config = _compiler_of(decorated)
    assert config.compiler == "tag_decorator"
    assert config.device == "cpu"
    assert config.backend_options == {"alpha": 1, "beta": "module"}

    config = _compiler_of(decorated, compiler="tag_call", alpha=3)
    assert config.compiler == "tag_call"
    assert config.backend_options == {"alpha": 3, "beta": "module"}


def test_jit_options_reach_the_compiler():
    _seen.clear()
    fn = numdef.jit(plain, compiler="tag_call", gamma=True)
    np.testing.assert_allclose(fn(np.zeros(2, dtype=np.float32)), [1, 1])
    fn(np.ones(2, dtype=np.float32))
    assert [tag for tag, _ in _seen] == ["call"]
    assert _seen[0][1].backend_options == {"gamma": True}

    rebound = numdef.jit(fn, gamma=False)
    assert rebound.options == {"compiler": "tag_call", "gamma": False}


def test_callable_compiler_is_used_directly():
    calls = []

    def custom(graph, templates, config):
        calls.append([t.shape for t in templates])
        return evaluator_compile(graph, templates, config)

    out = numdef.jit(plain, compiler=custom)(np.zeros(2, dtype=np.float32))
    np.testing.assert_allclose(out, [1, 1])
    assert calls == [[(2,)]]


def test_unknown_compilers_are_rejected_early():
    with pytest.raises(CompilationError, match="Unknown compiler 'nope'"):
        numdef.defn(compiler="nope")(_identity)
    with pytest.raises(CompilationError, match="Unknown compiler"):
        numdef.jit(plain, compiler="nope")
    with pytest.raises(CompilationError, match="Unknown compiler"):
        numdef.set_default_options(compiler="nope")


def _identity(x):
    return x


def test_backend_failures_are_wrapped():
    def broken(graph, templates, config):
        raise ValueError("no lowering today")

    def not_callable(graph, templates, config):
        return 42

    with pytest.raises(CompilationError, match="no lowering today") as info:
        numdef.jit(plain, compiler=broken)(np.zeros(2, dtype=np.float32))
    assert isinstance(info.value.__cause__, ValueError)

    with pytest.raises(CompilationError, match="non-callable int"):
        numdef.jit(plain, compiler=not_callable)(np.zeros(2, dtype=np.float32))


def test_module_options_must_be_a_mapping(monkeypatch):
    monkeypatch.setattr(sys.modules[__name__], "__numdef_options__", ["evaluator"], raising=False)
    with pytest.raises(TypeError, match="__numdef_options__"):
        _compiler_of(plain)


@pytest.mark.parametrize(
    "spec, expected",
    [("", "auto"), ("GPU", "cuda"), ("gpu:1", "cuda:1"), ("cuda:0", "cuda:0"), ("mps:0", "mps"), ("cpu", "cpu")],
)
def test_device_normalization(spec, expected):
    assert CompilerConfig(device=spec).normalized().device == expected


def test_invalid_device_and_evaluator_device_checks():
    with pytest.raises(ValueError, match="Unsupported device"):
        CompilerConfig(device="abacus").normalized()
    with pytest.raises(CompilationError, match="only supports CPU"):
        numdef.jit(plain, device="cuda")(np.zeros(2, dtype=np.float32))


def test_fingerprint_is_hashable_with_unhashable_options():
    config = CompilerConfig.from_options({"compiler": "evaluator", "layers": [1, 2], "extra": {"a": [3]}})
    hash(config.fingerprint())
    assert config.fingerprint() == CompilerConfig.from_options(
        {"compiler": "EVALUATOR", "layers": [1, 2], "extra": {"a": [3]}}
    ).fingerprint()
