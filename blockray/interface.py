"""Common interface functions for `blockray` tensor objects."""

import autoray as ar


def conj(x, **kwargs):
    """Conjugate a `blockray` tensor."""
    return x.conj(**kwargs)


def max(x):
    """Return the maximum stored value of a `blockray` tensor."""
    try:
        return x.max()
    except AttributeError:
        # called on non blockray array
        return ar.do("max", x)


def min(x):
    """Return the minimum stored value of a `blockray` tensor."""
    try:
        return x.min()
    except AttributeError:
        # called on non blockray array
        return ar.do("min", x)


def sum(x):
    """Return the sum of a `blockray` tensor."""
    try:
        return x.sum()
    except AttributeError:
        # called on non blockray array
        return ar.do("sum", x)


def all(x):
    """Check if all stored elements of a `blockray` tensor are true."""
    try:
        return x.all()
    except AttributeError:
        # called on non blockray array
        return ar.do("all", x)


def any(x):
    """Check if any elements of a `blockray` tensor are true."""
    try:
        return x.any()
    except AttributeError:
        # called on non blockray array
        return ar.do("any", x)


def abs(x):
    """Return the absolute value of a `blockray` tensor."""
    try:
        return x.abs()
    except AttributeError:
        # called on non blockray array
        return ar.do("abs", x)


def sqrt(x):
    """Return the square root of a `blockray` tensor."""
    try:
        return x.sqrt()
    except AttributeError:
        # called on non blockray array
        return ar.do("sqrt", x)


def real(x):
    return x.real


def imag(x):
    return x.imag


def reshape(a, newshape, **kwargs):
    """Reshape a `blockray` tensor, either via fusing or unfusing, or by
    supplying the target chunk structure of every axis.
    """
    return a.reshape(newshape, **kwargs)


def tensordot(a, b, axes=2, **kwargs):
    """Contract two `blockray` tensors along the specified axes.

    Parameters
    ----------
    a : BlockSparseTensor
        First tensor to contract.
    b : BlockSparseTensor
        Second tensor to contract.
    axes : int or tuple of int, optional
        If an integer, the number of axes to contract. If a tuple, the axes
        to contract. Default is 2.
    """
    try:
        return a.tensordot(b, axes, **kwargs)
    except AttributeError:
        if getattr(a, "ndim", 0) == 0:
            # likely called as effective scalar multiplication
            return a * b
        else:
            raise TypeError(
                f"Expected BlockSparseTensor, got {type(a).__name__}."
            )


def transpose(a, axes=None, **kwargs):
    """Transpose a `blockray` tensor."""
    return a.transpose(axes, **kwargs)


def permute(a, perm, **kwargs):
    """Permute the axes of a `blockray` tensor."""
    return a.permute(perm, **kwargs)


def to_dense(a):
    """Expand a `blockray` tensor into a dense array."""
    return a.to_dense()


def norm(x):
    """Frobenius norm of a `blockray` tensor."""
    return x.norm()


# non-standard 'composed' functions


def fuse(x, *axes_groups):
    """Fuse multiple axes of a `blockray` tensor."""
    return x.fuse(*axes_groups)


ar.register_function("blockray", "fuse", fuse)


def unfuse(x, axis):
    """Unfuse a previously fused axis of a `blockray` tensor."""
    return x.unfuse(axis)


ar.register_function("blockray", "unfuse", unfuse)


def common_axes(a, b):
    """Find pairs of axes of ``a`` and ``b`` with matching index spaces,
    suitable for supplying to ``tensordot``. Each axis is matched at most
    once, greedily in order.

    Returns
    -------
    axes_a, axes_b : tuple[int]
    """
    axes_a = []
    axes_b = []
    for i, ixa in enumerate(a.indices):
        for j, ixb in enumerate(b.indices):
            if (j not in axes_b) and ixa == ixb:
                axes_a.append(i)
                axes_b.append(j)
                break
    return tuple(axes_a), tuple(axes_b)


def uncommon_axes(a, b):
    """Find the axes of ``a`` that have no matching partner in ``b``, using
    the same matching as ``common_axes``.
    """
    axes_a, _ = common_axes(a, b)
    return tuple(i for i in range(a.ndim) if i not in axes_a)
