import numpy as np

import numdef

__numdef_options__ = {"compiler": "evaluator"}


@numdef.defn
def affine(x, w, b):
    return numdef.tanh(x @ w + b)


def main() -> None:
    x = np.random.default_rng(0).normal(size=(4, 3)).astype(np.float32)
    w = np.eye(3, dtype=np.float32)
    b = np.zeros(3, dtype=np.float32)

    compiled = numdef.compile(affine, numdef.template((4, 3)), w, b)
    print(compiled)
    print(compiled(x, w, b))
    print(compiled.explain())

    for name in ("jax", "torch"):
        try:
            print(name, numdef.jit(affine, compiler=name)(x, w, b))
        except numdef.CompilationError as exc:
            print(f"{name} unavailable: {exc}")


if __name__ == "__main__":
    main()
