"""Linear algebra functions for block sparse tensors."""

import functools
import logging
import warnings

import autoray as ar

from . import utils
from .core import BlockSparseTensor
from .errors import NonBlockDiagonalInput
from .index import IndexSpace
from .utils import normalize_axes, without

logger = logging.getLogger(__name__)


def norm(x, *args, **kwargs):
    """Frobenius norm of a block sparse tensor."""
    return x.norm(*args, **kwargs)


@functools.cache
def get_numpy_svd_with_fallback():
    import numpy as np

    def svd_with_fallback(x):
        try:
            return np.linalg.svd(x, full_matrices=False)
        except np.linalg.LinAlgError:
            import scipy.linalg as sla

            warnings.warn(
                "Dense SVD did not converge, falling back to the "
                "'gesvd' driver."
            )
            return sla.svd(x, full_matrices=False, lapack_driver="gesvd")

    return svd_with_fallback


def _get_svd_fn(backend):
    if backend == "numpy":
        return get_numpy_svd_with_fallback()
    return ar.get_lib_fn(backend, "linalg.svd")


def _matricize(x, left_axes):
    """Bring ``x`` into matrix form, rows being ``left_axes`` and columns the
    remaining axes, fusing each group if it has more than one axis.

    Returns
    -------
    xm : BlockSparseTensor
        The 2D tensor.
    unfuse_left, unfuse_right : bool
        Whether the row and column axes respectively were created here and
        should be unfused in the factors.
    """
    if left_axes is None:
        if x.ndim != 2:
            raise ValueError(
                f"svd needs a matrix, got {x.ndim} dimensions. "
                "Supply `left_axes` to choose the row axes."
            )
        return x, False, False

    if isinstance(left_axes, int):
        left_axes = (left_axes,)
    left_axes = normalize_axes(left_axes, x.ndim)
    right_axes = without(range(x.ndim), left_axes)
    if (not left_axes) or (not right_axes):
        raise ValueError(
            f"Need at least one row and one column axis, got {left_axes}."
        )

    nleft = len(left_axes)
    xm = x.transpose((*left_axes, *right_axes))
    groups = [
        g
        for g in (tuple(range(nleft)), tuple(range(nleft, x.ndim)))
        if len(g) > 1
    ]
    xm.fuse(*groups, inplace=True)

    return xm, nleft > 1, len(right_axes) > 1


def _check_block_diagonal(xm):
    for ax in (0, 1):
        seen = set()
        for label in xm.labels:
            c = label[ax]
            if c in seen:
                raise NonBlockDiagonalInput(
                    f"Chunk {c} of axis {ax} is used by more than one block, "
                    "so the matrix is not block diagonal."
                )
            seen.add(c)


def _svd_blocks(xm):
    """Dense SVD of every present block of the block diagonal matrix ``xm``,
    in canonical order.
    """
    _svd = _get_svd_fn(xm.backend)
    _conj = ar.get_lib_fn(xm.backend, "conj")
    _transpose = ar.get_lib_fn(xm.backend, "transpose")

    results = []
    for label in xm.labels:
        u, s, vh = _svd(xm.block_view(label))
        results.append((label, u, s, _transpose(_conj(vh))))

    return results


def _assemble_factors(xm, results, absorb=None):
    """Build the U, S and V tensors from a sequence of per block
    ``(label, u, s, v)`` results, the k-th of which gets bond chunk k.
    """
    row_ix, col_ix = xm.indices
    backend = xm.backend

    if not results:
        # no blocks -> placeholder bond with no blocks
        bond = IndexSpace([1])
        real_dtype = ar.get_dtype_name(
            ar.do("real", xm.data[:0], like=backend)
        )
        U = BlockSparseTensor.zeros((row_ix, bond), dtype=xm.dtype)
        S = BlockSparseTensor.zeros((bond, bond), dtype=real_dtype)
        V = BlockSparseTensor.zeros((col_ix, bond), dtype=xm.dtype)
        return U, (None if absorb is not None else S), V

    sizes = [ar.size(s) for _, _, s, _ in results]
    if col_ix.qns is not None:
        qns = [col_ix.qn_of(c) for (_, c), _, _, _ in results]
    else:
        qns = None
    bond = IndexSpace(sizes, qns=qns)

    u_blocks = {}
    s_blocks = {}
    v_blocks = {}
    for k, ((r, c), u, s, v) in enumerate(results, 1):
        if absorb is None:
            s_blocks[k, k] = ar.do("diag", s, like=backend)
        elif absorb == -1:
            u = u * ar.do("reshape", s, (1, -1), like=backend)
        elif absorb == 1:
            v = v * ar.do("reshape", s, (1, -1), like=backend)
        elif absorb == 0:
            s_sqrt = ar.do("reshape", ar.do("sqrt", s, like=backend), (1, -1))
            u = u * s_sqrt
            v = v * s_sqrt
        else:
            raise ValueError(f"Unknown absorb value: {absorb}")

        u_blocks[r, k] = u
        v_blocks[c, k] = v

    U = BlockSparseTensor.from_blocks((row_ix, bond), u_blocks)
    V = BlockSparseTensor.from_blocks((col_ix, bond), v_blocks)
    S = (
        BlockSparseTensor.from_blocks((bond, bond), s_blocks)
        if absorb is None
        else None
    )

    if utils.DEBUG:
        U.check()
        V.check()
        if S is not None:
            S.check()

    return U, S, V


def _finalize(U, S, V, unfuse_left, unfuse_right):
    if unfuse_left:
        U.unfuse(0, inplace=True)
    if unfuse_right:
        V.unfuse(0, inplace=True)
    return U, S, V


def svd(x, left_axes=None):
    """Singular value decomposition of a block diagonal block sparse tensor,
    such that ``x = U @ S @ V^H``.

    Parameters
    ----------
    x : BlockSparseTensor
        The tensor to decompose. If ``left_axes`` is not given it must be a
        matrix whose row and column chunks are each used by at most one
        present block.
    left_axes : sequence[int], optional
        The axes to treat as rows, the remaining axes are treated as
        columns. Each group is fused into a single axis for the
        decomposition, and unfused again in the factors.

    Returns
    -------
    U : BlockSparseTensor
        The left singular vectors, with axes ``(*row_axes, bond)``.
    S : BlockSparseTensor
        The diagonal matrix of singular values, with axes ``(bond, bond)``.
    V : BlockSparseTensor
        The right singular vectors, with axes ``(*col_axes, bond)``.
    """
    xm, unfuse_left, unfuse_right = _matricize(x, left_axes)
    _check_block_diagonal(xm)
    results = _svd_blocks(xm)
    U, S, V = _assemble_factors(xm, results)
    return _finalize(U, S, V, unfuse_left, unfuse_right)


_CUTOFF_MODE_MAP = {
    1: 1,
    "abs": 1,
    2: 2,
    "rel": 2,
    3: 3,
    "sum2": 3,
    4: 4,
    "rsum2": 4,
    5: 5,
    "sum1": 5,
    6: 6,
    "rsum1": 6,
}

_ABSORB_MAP = {
    -1: -1,
    "left": -1,
    0: 0,
    "both": 0,
    1: 1,
    "right": 1,
    None: None,
}


def calc_num_keep(svals, cutoff, cutoff_mode, max_bond):
    """Given the pooled singular values ``svals``, sorted in descending
    order, find how many should be kept.

    Parameters
    ----------
    svals : sequence[float]
        All singular values, largest first.
    cutoff : float
        The cutoff threshold, non-positive for none.
    cutoff_mode : int
        The mode, see ``svd_truncated``.
    max_bond : int
        The maximum number of values to keep, non-positive for no limit.

    Returns
    -------
    int
    """
    n = len(svals)

    if cutoff > 0.0:
        if cutoff_mode == 1:
            # absolute cutoff
            n_keep = sum(1 for s in svals if s >= cutoff)
        elif cutoff_mode == 2:
            # relative cutoff
            n_keep = sum(1 for s in svals if s >= cutoff * svals[0])
        else:
            # possibly squared singular values
            power = {3: 2, 4: 2, 5: 1, 6: 1}[cutoff_mode]

            # cumulative sum from the smallest value upwards
            cum_spow = []
            total = 0.0
            for s in reversed(svals):
                total += s**power
                cum_spow.append(total)

            if cutoff_mode in (4, 6):
                # rsum1 or rsum2: relative cumulative cutoff
                threshold = cutoff * total
            else:
                # sum1 or sum2: absolute cumulative cutoff
                threshold = cutoff

            n_keep = sum(1 for cs in cum_spow if cs >= threshold)
    else:
        n_keep = n

    if 0 < max_bond < n_keep:
        n_keep = max_bond

    # always keep at least one value
    return max(n_keep, 1) if n else 0


def svd_truncated(
    x,
    left_axes=None,
    cutoff=-1.0,
    cutoff_mode="rsum2",
    max_bond=-1,
    absorb=None,
):
    """Truncated singular value decomposition of a block diagonal block
    sparse tensor. The singular values of all blocks are pooled and ranked,
    so the truncation is global rather than per block.

    Parameters
    ----------
    x : BlockSparseTensor
        The tensor to decompose.
    left_axes : sequence[int], optional
        The axes to treat as rows, see ``svd``.
    cutoff : float, optional
        Singular value cutoff threshold.
    cutoff_mode : int or str, optional
        How to perform the truncation:

        - 1 or 'abs': trim values below ``cutoff``
        - 2 or 'rel': trim values below ``s[0] * cutoff``
        - 3 or 'sum2': trim s.t. ``sum(s_trim**2) < cutoff``.
        - 4 or 'rsum2': trim s.t. ``sum(s_trim**2) < sum(s**2) * cutoff``.
        - 5 or 'sum1': trim s.t. ``sum(s_trim**1) < cutoff``.
        - 6 or 'rsum1': trim s.t. ``sum(s_trim**1) < sum(s**1) * cutoff``.

    max_bond : int
        An explicit maximum bond dimension, use -1 for none.
    absorb : {-1, 0, 1, None}
        How to absorb the singular values.

        - -1 or 'left': absorb into the left factor (U).
        - 0 or 'both': absorb the square root into both factors.
        - 1 or 'right': absorb into the right factor (V).
        - None: do not absorb, return singular values as a diagonal tensor.

    Returns
    -------
    U : BlockSparseTensor
    S : BlockSparseTensor or None
        The singular values, or None if absorbed.
    V : BlockSparseTensor
    """
    cutoff_mode = _CUTOFF_MODE_MAP[cutoff_mode]
    absorb = _ABSORB_MAP[absorb]

    xm, unfuse_left, unfuse_right = _matricize(x, left_axes)
    _check_block_diagonal(xm)
    results = _svd_blocks(xm)

    # rank every singular value by (value desc, block asc, position asc)
    ranking = sorted(
        (-float(v), k, i)
        for k, (_, _, s, _) in enumerate(results)
        for i, v in enumerate(ar.to_numpy(s).tolist())
    )
    n_keep = calc_num_keep(
        [-v for v, _, _ in ranking], cutoff, cutoff_mode, max_bond
    )

    # within each block values are non-increasing, so each keeps a prefix
    n_chis = [0] * len(results)
    for _, k, _ in ranking[:n_keep]:
        n_chis[k] += 1

    logger.debug(
        "keeping %d of %d singular values, across %d of %d blocks",
        n_keep,
        len(ranking),
        sum(1 for n_chi in n_chis if n_chi),
        len(results),
    )

    truncated = [
        (label, u[:, :n_chi], s[:n_chi], v[:, :n_chi])
        for (label, u, s, v), n_chi in zip(results, n_chis)
        if n_chi > 0
    ]

    U, S, V = _assemble_factors(xm, truncated, absorb=absorb)
    return _finalize(U, S, V, unfuse_left, unfuse_right)


def svd_truncated_matrix(
    x,
    cutoff=-1.0,
    cutoff_mode=4,
    max_bond=-1,
    absorb=0,
    renorm=0,
):
    """Truncated svd with the positional signature used by ``autoray``
    consumers, returning ``(U, S, V^H)``.
    """
    if renorm:
        raise NotImplementedError("renorm not implemented yet.")
    U, S, V = svd_truncated(
        x,
        cutoff=cutoff,
        cutoff_mode=cutoff_mode,
        max_bond=max_bond,
        absorb=absorb,
    )
    return U, S, V.conj().transpose()


__all__ = (
    "calc_num_keep",
    "norm",
    "svd",
    "svd_truncated",
    "svd_truncated_matrix",
)

ar.register_function("blockray", "svd_truncated", svd_truncated_matrix)
