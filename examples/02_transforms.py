import numpy as np

import numdef


@numdef.deftransform
def rows_to_tensor(rows):
    """Validate a nested sequence of rows and convert it to a matrix."""
    lengths = {len(row) for row in rows}
    if len(lengths) > 1:
        raise ValueError(f"Rows must all have the same length, got lengths {sorted(lengths)}")
    return numdef.tensor(rows)


@numdef.deftransform
def new_axes_count(count):
    if count is None:
        return 0
    if isinstance(count, bool) or not isinstance(count, int):
        raise TypeError(f"new_axes_count expects an int or None, got {count!r}")
    return count


@numdef.defn
def scale_rows(*, rows):
    matrix = rows_to_tensor(rows)
    return numdef.new_axis(matrix, 0) * 10


@numdef.defn
def append_axes(x, *, count=None):
    n = new_axes_count(count)
    return numdef.reshape(x, x.shape + (1,) * n)


@numdef.defn
def normalize(x):
    if x.ndim == 1:
        return x / numdef.sum(x)
    return x / numdef.sum(x, axes=-1, keepdims=True)


if __name__ == "__main__":
    print(scale_rows(rows=((1, 2, 3), (4, 5, 6))))
    try:
        scale_rows(rows=((1, 2), (3, 4, 5)))
    except ValueError as exc:
        print("rejected:", exc)

    x = np.arange(6, dtype=np.float32).reshape(2, 3)
    print("append_axes:", append_axes(x, count=2).shape)
    print("normalize:", normalize(x + 1))
    print(numdef.debug_expr(scale_rows)(rows=((1, 2, 3), (4, 5, 6))).explain())
