import numpy as np

import numdef


@numdef.defn
def subtract(a, b):
    return a - b


@numdef.defn
def softmax(x, *, axis=-1):
    shifted = x - numdef.reduce_max(x, axes=axis, keepdims=True)
    e = numdef.exp(shifted)
    return e / numdef.sum(e, axes=axis, keepdims=True)


@numdef.defn
def relu_layer(x, w, b):
    return numdef.maximum(x @ w + b, 0.0)


if __name__ == "__main__":
    a = np.array([1.0, 2.0, 3.0], dtype=np.float32)
    b = np.array([1, 2, 3], dtype=np.int64)
    print("subtract:", subtract(a, b))

    scores = np.array([[0.2, -1.5, 0.3], [0.0, 0.5, -0.1]], dtype=np.float32)
    print("softmax:", softmax(scores))
    print(numdef.debug_expr(softmax)(scores))
    print("cache:", softmax.cache_info())
