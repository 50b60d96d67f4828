import functools
import itertools
import math
import os

# a simple flag for enabling rigorous checks in many places
DEBUG = bool(os.environ.get("BLOCKRAY_DEBUG", "0").upper() in ("1", "TRUE"))


def set_debug(debug):
    global DEBUG
    DEBUG = debug


def lazyabstractmethod(method):
    """Mark a method as one that must be implemented in a subclass, but only
    enforce this when the method is called. This can be used as a decorator (if
    you want to demonstrate the call signature) or by directly assigning the
    result to a method name.
    """

    if callable(method):
        name = method.__name__
    else:
        name = str(method)

    def raising_method(self, *args, **kwargs):
        raise NotImplementedError(
            f"`{name}` must be implemented in "
            f"subclass `{self.__class__.__name__}`"
        )

    return raising_method


# --------------------------------------------------------------------------- #


def permuted(it, perm):
    """Return a tuple of the elements in ``it`` (which should be indexable),
    in the order given by ``perm``.

    Examples
    --------

        >>> permuted(['a', 'b', 'c', 'd'], [3, 1, 0, 2])
        ('d', 'b', 'a', 'c')

    """
    return tuple(it[p] for p in perm)


def without(it, remove):
    """Return a tuple of the elements in ``it`` with those at positions
    ``remove`` removed.
    """
    return tuple(el for i, el in enumerate(it) if i not in remove)


def normalize_axes(axes, ndim):
    """Map possibly negative ``axes`` into ``range(ndim)``, raising a
    ``ValueError`` for any axis outside ``[-ndim, ndim)``.
    """
    normed = []
    for ax in axes:
        ax = int(ax)
        if not (-ndim <= ax < ndim):
            raise ValueError(
                f"Axis {ax} out of range for tensor with {ndim} dimensions."
            )
        normed.append(ax % ndim)
    return tuple(normed)


def replace_with_seq(it, index, seq):
    """Return a tuple, with the item at ``index`` in ``it`` replaced by the
    items in ``seq``.
    """
    return (*it[:index], *seq, *it[index + 1 :])


def accumulate_offsets(sizes):
    """Take a sequence of sizes and return the starting offset of each, i.e.
    the exclusive cumulative sum.
    """
    return tuple(itertools.accumulate(sizes, initial=0))[:-1]


@functools.lru_cache(2**14)
def row_major_strides(counts):
    """The row-major strides of a grid with ``counts`` cells per axis."""
    strides = []
    s = 1
    for n in reversed(counts):
        strides.append(s)
        s *= n
    return tuple(reversed(strides))


def ravel_label(label, counts):
    """Linearize the 1-based ``label`` over a grid with ``counts`` cells per
    axis, row-major, returning a 0-based ordinal.
    """
    return sum(
        (c - 1) * s for c, s in zip(label, row_major_strides(tuple(counts)))
    )


def unravel_label(ordinal, counts):
    """Inverse of ``ravel_label``: the 1-based label of the 0-based row-major
    ``ordinal`` in a grid with ``counts`` cells per axis.
    """
    label = []
    for s in row_major_strides(tuple(counts)):
        c, ordinal = divmod(ordinal, s)
        label.append(c + 1)
    return tuple(label)


def prod(it):
    return math.prod(it)


# --------------------------------------------------------------------------- #


class RandomStateTranslated:
    """Simple wrapper to make `numpy.random.RandomState` have the same
    interface as `numpy.random.Generator`."""

    def __init__(self, rng):
        self.rng = rng

    def integers(self, *args, **kwargs):
        return self.rng.randint(*args, **kwargs)

    def __getattribute__(self, name):
        try:
            return object.__getattribute__(self, name)
        except AttributeError:
            x = getattr(self.rng, name)
            super().__getattribute__("__dict__")[name] = x
            return x


def get_rng(seed=None):
    import numpy as np

    # RandomStateTranslated is useful for determinism across numpy versions
    if isinstance(seed, RandomStateTranslated):
        return seed
    elif isinstance(seed, np.random.RandomState):
        return RandomStateTranslated(seed)
    else:
        return np.random.default_rng(seed)


def get_random_fill_fn(
    seed=None,
    dist="normal",
    dtype="float64",
    scale=1.0,
    loc=0.0,
):
    """Get a function that produces numpy arrays of random numbers with the
    specified distribution, dtype, loc, and scale.

    Parameters
    ----------
    seed : None, int, or numpy.random.Generator, optional
        The seed for the random number generator.
    dist : str, optional
        The distribution of the random numbers. Can be "normal" or "uniform" or
        any other distribution supported by numpy.
    dtype : str, optional
        The data type of the random numbers. If "complex", the real and
        imaginary parts are generated separately and added.
    scale : float, optional
        A multiplicative factor to the distribution.
    loc : float, optional
        An additive offset to the distribution.

    Returns
    -------
    callable
        A function with signature `fill_fn(shape) -> numpy.ndarray`.
    """
    rng = get_rng(seed)

    def fill_fn(shape):
        x = getattr(rng, dist)(size=shape)
        if "complex" in dtype:
            x = x + 1j * getattr(rng, dist)(size=shape)
        if scale != 1.0:
            x *= scale
        if loc != 0.0:
            x += loc
        if x.dtype != dtype:
            x = x.astype(dtype)

        return x

    return fill_fn


def rand_partition(d, n, seed=None):
    """Randomly partition `d` into `n` sizes each of size at least 1."""
    if d == n:
        return [1] * n

    rng = get_rng(seed)

    if n == 1:
        return [d]

    if n == 2:
        # cut in two
        s = int(rng.integers(1, d))
        return [s, d - s]

    # cut into 3 or more
    splits = (
        0,
        *sorted(rng.choice(range(1, d), size=n - 1, replace=False)),
        d,
    )
    return [int(splits[i + 1] - splits[i]) for i in range(n)]


def rand_index_space(d, num_chunks=None, qns=False, seed=None):
    """Generate a random index space with total dimension ``d``.

    Parameters
    ----------
    d : int
        The total size of the index.
    num_chunks : int, optional
        The number of chunks, if not given it is chosen randomly between 1
        and ``d``.
    qns : bool, optional
        Whether to attach integer labels, ``0, 1, 2, ...``, to the chunks.
    seed : None, int, or numpy.random.Generator, optional
        The seed for the random number generator.

    Returns
    -------
    IndexSpace
    """
    from .index import IndexSpace

    rng = get_rng(seed)
    d = int(d)

    if num_chunks is None:
        num_chunks = int(rng.integers(1, d + 1))

    sizes = rand_partition(d, num_chunks, seed=rng)
    return IndexSpace(sizes, qns=tuple(range(num_chunks)) if qns else None)


def get_rand(
    indices,
    labels=None,
    density=0.5,
    seed=None,
    dist="normal",
    dtype="float64",
):
    """Get a random block sparse tensor.

    Parameters
    ----------
    indices : sequence[IndexSpace or sequence[int]]
        The index spaces, or just chunk sizes, of each axis.
    labels : sequence[tuple[int]], optional
        The labels of the present blocks. If not given, each possible block is
        present with probability ``density``, with at least one block.
    density : float, optional
        The fraction of possible blocks to fill, if ``labels`` is not given.
    seed : None, int, or numpy.random.Generator, optional
        The seed for the random number generator.
    dist : str, optional
        The distribution of the random numbers.
    dtype : str, optional
        The data type of the random numbers.

    Returns
    -------
    BlockSparseTensor
    """
    from .core import BlockSparseTensor
    from .index import as_index_space

    rng = get_rng(seed)
    indices = tuple(map(as_index_space, indices))

    if labels is None:
        possible = list(
            itertools.product(*(range(1, ix.num_chunks + 1) for ix in indices))
        )
        labels = [lb for lb in possible if rng.random() < density]
        if not labels:
            labels = [possible[int(rng.integers(len(possible)))]]

    return BlockSparseTensor.random(
        indices, labels, seed=rng, dist=dist, dtype=dtype
    )
