"""Block sparse tensors, storing every present block in one flat array."""

import functools
import itertools
import logging
import numbers
import operator
from collections import defaultdict

import autoray as ar

from . import utils
from .common import BlockrayCommon
from .errors import (
    ContractionAxisMismatch,
    IncompatibleIndexSpaces,
    IncompatibleReshapeTarget,
    IndexOutOfBounds,
)
from .index import IndexSpace, SubIndexInfo, as_index_space, check_label
from .offsets import BlockOffsetTable
from .utils import (
    get_random_fill_fn,
    normalize_axes,
    permuted,
    prod,
    ravel_label,
    replace_with_seq,
    unravel_label,
    without,
)

logger = logging.getLogger(__name__)


def _pack(arrays, dtype="float64", like="numpy"):
    """Flatten and concatenate ``arrays`` into a single 1D array."""
    if not arrays:
        return ar.do("zeros", (0,), dtype=dtype, like=like)
    _reshape = ar.get_lib_fn(like, "reshape")
    return ar.do(
        "concatenate",
        tuple(_reshape(x, (-1,)) for x in arrays),
        axis=0,
        like=like,
    )


def _ravel_intra(intra, shape):
    """The row-major position of ``intra`` within a block of ``shape``."""
    pos = 0
    for i, d in zip(intra, shape):
        pos = pos * d + i
    return pos


def _find_full_reshape(newshape, size):
    """Fill in a single ``-1`` in ``newshape``, if present."""
    if -1 not in newshape:
        return newshape
    known = prod(d for d in newshape if d != -1)
    if known == 0 or size % known:
        raise IncompatibleReshapeTarget(
            f"Cannot reshape array of size {size} into {newshape}."
        )
    return tuple(size // known if d == -1 else d for d in newshape)


@functools.lru_cache(2**15)
def reshape_to_fuse_axes(shape, newshape):
    """Assuming only fuses need to happen, convert from ``reshape`` form to
    ``fuse`` form - a sequence of axes groups.
    """
    i = 0
    groups = []
    for dnew in newshape:
        if i >= len(shape):
            raise IncompatibleReshapeTarget(
                f"Cannot reshape {shape} to {newshape}"
            )
        # accumulate axes until the new dimension is reached
        d = shape[i]
        group = [i]
        i += 1
        while d < dnew and i < len(shape):
            d *= shape[i]
            group.append(i)
            i += 1
        if d != dnew:
            raise IncompatibleReshapeTarget(
                f"Cannot reshape {shape} to {newshape}"
            )
        if len(group) > 1:
            # only record fused axes
            groups.append(tuple(group))
    if i != len(shape):
        raise IncompatibleReshapeTarget(
            f"Cannot reshape {shape} to {newshape}"
        )
    return tuple(groups)


def reshape_to_unfuse_axes(indices, newshape):
    """Assuming only unfuses need to happen, convert from ``reshape`` form to
    a sequence of ``axes`` to be supplied to ``unfuse``.
    """
    shape = tuple(ix.size_total for ix in indices)
    i = 0
    unfused = []
    for j, ix in enumerate(indices):
        if ix.subinfo is None:
            # unfused axis, just make sure dimension matches
            if (i >= len(newshape)) or (ix.size_total != newshape[i]):
                raise IncompatibleReshapeTarget(
                    f"Cannot reshape {shape} to {newshape}, "
                    f"axis {j} has size {ix.size_total}."
                )
            i += 1
        else:
            # fused axis, make all subindex dimensions match too
            subshape = ix.subinfo.subshape
            if tuple(newshape[i : i + len(subshape)]) != subshape:
                raise IncompatibleReshapeTarget(
                    f"Cannot reshape {shape} to {newshape}, "
                    f"subindex sizes for axis {j} do not match."
                )
            unfused.append(j)
            i += len(subshape)

    if i != len(newshape):
        raise IncompatibleReshapeTarget(
            f"Cannot reshape {shape} to {newshape}"
        )

    return tuple(sorted(unfused, reverse=True))


class BlockSparseTensor(BlockrayCommon):
    """A block sparse tensor. Each axis is an ``IndexSpace`` partitioned into
    chunks, and a block is labelled by a tuple of 1-based chunk numbers, one
    per axis. Only present blocks are stored, all in a single flat array,
    laid out in canonical label order as recorded by a ``BlockOffsetTable``.

    Parameters
    ----------
    indices : sequence[IndexSpace or sequence[int]]
        The index space of each axis, or just its chunk sizes.
    labels : sequence[tuple[int]], optional
        The labels of the present blocks.
    data : array_like, optional
        The flat data of all present blocks, in canonical order, each block
        in row-major order. If not given the blocks are filled with zeros.
    dtype : str, optional
        The data type to use if ``data`` is not given.
    """

    __slots__ = ("_indices", "_offsets", "_data")

    def __init__(self, indices, labels=(), data=None, dtype="float64"):
        self._indices = tuple(map(as_index_space, indices))
        self._offsets = BlockOffsetTable(labels, self._indices)

        nnz = self._offsets.total_nonzero_elements()
        if data is None:
            data = ar.do("zeros", (nnz,), dtype=dtype, like="numpy")
        else:
            if not hasattr(data, "shape"):
                data = ar.do("array", data, like="numpy")
            if (ar.ndim(data) != 1) or (ar.size(data) != nnz):
                raise ValueError(
                    f"Expected flat data of size {nnz}, "
                    f"got shape {ar.shape(data)}."
                )
        self._data = data

        if utils.DEBUG:
            self.check()

    def copy(self):
        """Copy this block sparse tensor, including its data."""
        new = self.__new__(self.__class__)
        new._indices = self._indices
        new._offsets = self._offsets
        new._data = ar.do("copy", self._data, like=self.backend)
        return new

    def copy_with(self, indices=None, offsets=None, data=None):
        """A copy of this tensor with some attributes replaced. Note that
        checks are only performed in debug mode, this is intended for internal
        use.
        """
        new = self.__new__(self.__class__)
        new._indices = self._indices if indices is None else tuple(indices)
        new._offsets = self._offsets if offsets is None else offsets
        new._data = (
            ar.do("copy", self._data, like=self.backend)
            if data is None
            else data
        )

        if utils.DEBUG:
            new.check()

        return new

    def modify(self, indices=None, offsets=None, data=None):
        """Modify this tensor in place with some attributes replaced. Note
        that checks are only performed in debug mode, this is intended for
        internal use.
        """
        if indices is not None:
            self._indices = tuple(indices)
        if offsets is not None:
            self._offsets = offsets
        if data is not None:
            self._data = data

        if utils.DEBUG:
            self.check()

        return self

    def _modify_or_copy(
        self, indices=None, offsets=None, data=None, inplace=False
    ):
        if inplace:
            return self.modify(indices=indices, offsets=offsets, data=data)
        else:
            return self.copy_with(indices=indices, offsets=offsets, data=data)

    # ------------------------------ properties ----------------------------- #

    @property
    def indices(self):
        """The index spaces of the tensor."""
        return self._indices

    @property
    def offsets(self):
        """The table of present blocks and where they are stored."""
        return self._offsets

    @property
    def data(self):
        """The flat array holding the data of every present block."""
        return self._data

    @property
    def labels(self):
        """The labels of the present blocks, in canonical order."""
        return self._offsets.labels

    @property
    def sizes(self):
        """The chunk sizes of each index."""
        return tuple(ix.sizes for ix in self._indices)

    @property
    def qns(self):
        """The chunk labels of each index."""
        return tuple(ix.qns for ix in self._indices)

    @property
    def shape(self):
        """The shape of the tensor, i.e. total size of each index."""
        return tuple(ix.size_total for ix in self._indices)

    @property
    def size(self):
        """The number of possible elements in this tensor, if it was dense."""
        return prod(self.shape)

    @property
    def ndim(self):
        """The number of dimensions/indices."""
        return len(self._indices)

    @property
    def num_blocks(self):
        """The number of present blocks."""
        return self._offsets.num_blocks

    @property
    def nnz(self):
        """The number of stored elements."""
        return self._offsets.total_nonzero_elements()

    def nonzero_block_count(self):
        return self.num_blocks

    def nonzero_element_count(self):
        return self.nnz

    def is_fused(self, ax):
        """Does axis `ax` carry subindex information, i.e., is it a fused
        index?
        """
        return self._indices[ax].subinfo is not None

    def get_sparsity(self):
        """The number of present blocks divided by the number of possible
        blocks.
        """
        return self.num_blocks / prod(ix.num_chunks for ix in self._indices)

    # ---------------------------- construction ----------------------------- #

    @classmethod
    def zeros(cls, indices, dtype="float64"):
        """Create a tensor with no present blocks."""
        return cls(indices, (), dtype=dtype)

    @classmethod
    def from_blocks(cls, indices, blocks, dtype="float64"):
        """Create a block sparse tensor from a mapping of labels to dense
        blocks.

        Parameters
        ----------
        indices : sequence[IndexSpace or sequence[int]]
            The index space of each axis.
        blocks : dict[tuple[int], array_like]
            A mapping of each present block label to its dense data.
        dtype : str, optional
            The data type to use if ``blocks`` is empty.

        Returns
        -------
        BlockSparseTensor
        """
        indices = tuple(map(as_index_space, indices))
        blocks = {check_label(k, indices): v for k, v in dict(blocks).items()}
        offsets = BlockOffsetTable(blocks.keys(), indices)

        arrays = []
        for label, _, shape in offsets.items():
            array = blocks[label]
            if tuple(ar.shape(array)) != tuple(shape):
                raise ValueError(
                    f"Block {label} has shape {ar.shape(array)}, "
                    f"expected {shape}."
                )
            arrays.append(array)

        like = ar.infer_backend(arrays[0]) if arrays else "numpy"
        new = cls.__new__(cls)
        new._indices = indices
        new._offsets = offsets
        new._data = _pack(arrays, dtype=dtype, like=like)

        if utils.DEBUG:
            new.check()

        return new

    @classmethod
    def from_fill_fn(cls, fill_fn, indices, labels, dtype="float64"):
        """Generate a block sparse tensor from a filling function. Every block
        in ``labels`` is filled with the result of ``fill_fn(shape)``.
        """
        indices = tuple(map(as_index_space, indices))
        labels = [check_label(label, indices) for label in labels]
        blocks = {
            label: fill_fn(
                tuple(ix.size_of(c) for ix, c in zip(indices, label))
            )
            for label in labels
        }
        return cls.from_blocks(indices, blocks, dtype=dtype)

    @classmethod
    def random(
        cls,
        indices,
        labels,
        seed=None,
        dist="normal",
        dtype="float64",
        scale=1.0,
        loc=0.0,
    ):
        """Create a block sparse tensor with random values in the blocks
        ``labels``.

        Parameters
        ----------
        indices : sequence[IndexSpace or sequence[int]]
            The index space of each axis.
        labels : sequence[tuple[int]]
            The labels of the present blocks.
        seed : None, int or numpy.random.Generator, optional
            The random seed.
        dist : str, optional
            The distribution to use. Can be one of ``"normal"``,
            ``"uniform"``, etc., see :func:`numpy.random.default_rng`.
        dtype : str, optional
            The data type of the random numbers.
        scale, loc : float, optional
            Scale and shift of the distribution.
        """
        fill_fn = get_random_fill_fn(
            seed=seed, dist=dist, dtype=dtype, scale=scale, loc=loc
        )
        return cls.from_fill_fn(fill_fn, indices, labels, dtype=dtype)

    @classmethod
    def from_dense(cls, array, indices, labels=None):
        """Create a block sparse tensor from a dense array by slicing it into
        blocks according to ``indices``.

        Parameters
        ----------
        array : array_like
            The dense array.
        indices : sequence[IndexSpace or sequence[int]]
            The index space of each axis, which must match the shape of
            ``array``.
        labels : sequence[tuple[int]], optional
            Which blocks to keep. If not given, every block that is not
            identically zero is kept.
        """
        indices = tuple(map(as_index_space, indices))
        shape = tuple(ix.size_total for ix in indices)
        if tuple(ar.shape(array)) != shape:
            raise IncompatibleIndexSpaces(
                f"Dense array of shape {ar.shape(array)} does not match "
                f"index spaces of shape {shape}."
            )

        if labels is None:
            labels = itertools.product(
                *(range(1, ix.num_chunks + 1) for ix in indices)
            )
            keep_zero = False
        else:
            keep_zero = True

        backend = ar.infer_backend(array)
        _any = ar.get_lib_fn(backend, "any")

        blocks = {}
        for label in labels:
            label = check_label(label, indices)
            selector = tuple(ix.slice_of(c) for ix, c in zip(indices, label))
            block = array[selector]
            if keep_zero or bool(_any(block != 0)):
                blocks[label] = block

        return cls.from_blocks(
            indices, blocks, dtype=ar.get_dtype_name(array)
        )

    def to_state(self):
        """Get a plain, structural representation of this tensor, suitable for
        serialization. See ``from_state`` for the inverse.
        """
        return {
            "indices": [index_to_state(ix) for ix in self._indices],
            "labels": [list(label) for label in self.labels],
            "data": ar.do("copy", self._data, like=self.backend),
        }

    @classmethod
    def from_state(cls, state):
        """Rebuild a tensor from the output of ``to_state``. The data is
        copied, so the new tensor does not share storage with ``state``.
        """
        indices = tuple(index_from_state(s) for s in state["indices"])
        data = ar.do("copy", state["data"])
        return cls(indices, tuple(map(tuple, state["labels"])), data=data)

    # -------------------------- element access ----------------------------- #

    def _locate(self, multi_index):
        """Convert a global multi-index into a block label and the multi-index
        within that block.
        """
        if isinstance(multi_index, numbers.Integral):
            multi_index = (multi_index,)
        multi_index = tuple(multi_index)

        if len(multi_index) != self.ndim:
            raise IndexOutOfBounds(
                f"Expected {self.ndim} coordinates, got {len(multi_index)}."
            )

        label = []
        intra = []
        for ix, coord in zip(self._indices, multi_index):
            if not isinstance(coord, numbers.Integral):
                raise TypeError(
                    f"Only integer coordinates are supported, got {coord!r}."
                )
            c, i = ix.locate(coord)
            label.append(c)
            intra.append(i)

        return tuple(label), tuple(intra)

    def _zero(self):
        return ar.do("zeros", (), dtype=self.dtype, like=self.backend)[()]

    def get(self, multi_index):
        """Get the element at the global ``multi_index``, which is zero if the
        owning block is not present.
        """
        label, intra = self._locate(multi_index)
        if label not in self._offsets:
            return self._zero()
        offset, shape = self._offsets.offset_and_shape(label)
        return self._data[offset + _ravel_intra(intra, shape)]

    def set(self, multi_index, value):
        """Set the element at the global ``multi_index`` to ``value``. If the
        owning block is not present, it is first created and filled with
        zeros.
        """
        label, intra = self._locate(multi_index)
        # convert first so a bad value leaves no new block behind
        value = ar.do("asarray", value, dtype=self.dtype, like=self.backend)
        if label not in self._offsets:
            self.materialize_block(label)
        offset, shape = self._offsets.offset_and_shape(label)
        self._data[offset + _ravel_intra(intra, shape)] = value

    def __getitem__(self, item):
        return self.get(item)

    def __setitem__(self, item, value):
        self.set(item, value)

    # --------------------------- block access ------------------------------ #

    def has_block(self, label):
        """Whether block ``label`` is present."""
        return self._offsets.present(label)

    is_block_present = has_block

    def index_of(self, label):
        """The 0-based canonical position of the present block ``label``."""
        return self._offsets.index_of(check_label(label, self._indices))

    def block_shape(self, label):
        """The dense shape of block ``label``, present or not."""
        label = check_label(label, self._indices)
        return tuple(ix.size_of(c) for ix, c in zip(self._indices, label))

    def materialize_block(self, label):
        """Make sure block ``label`` is present, inserting a block of zeros
        into the flat storage if not. This invalidates any existing block
        views.
        """
        table, offset = self._offsets.with_block(label, self._indices)
        if table is self._offsets:
            return

        label = check_label(label, self._indices)
        size = prod(table.shape_of(label))
        backend = self.backend
        zeros = ar.do("zeros", (size,), dtype=self.dtype, like=backend)
        self._data = ar.do(
            "concatenate",
            (self._data[:offset], zeros, self._data[offset:]),
            axis=0,
            like=backend,
        )
        self._offsets = table
        logger.debug(
            "materialized block %s with %d elements at offset %d",
            label,
            size,
            offset,
        )

        if utils.DEBUG:
            self.check()

    def block_view(self, label):
        """Get a view of the dense data of present block ``label``. Writing to
        the view modifies this tensor.
        """
        label = check_label(label, self._indices)
        offset, shape = self._offsets.offset_and_shape(label)
        return ar.do(
            "reshape",
            self._data[offset : offset + prod(shape)],
            shape,
            like=self.backend,
        )

    def block_view_at(self, i):
        """Get a view of the ``i``-th present block, in canonical order."""
        return self.block_view(self._offsets.label_at(i))

    def set_block(self, label, array):
        """Overwrite the data of block ``label``, creating it if necessary."""
        self.materialize_block(label)
        self.block_view(label)[...] = array

    @property
    def blocks(self):
        """A dict of views of every present block, in canonical order."""
        return {label: self.block_view(label) for label in self.labels}

    def to_dense(self):
        """Convert this block sparse tensor to a dense array, with zeros in
        the place of absent blocks.
        """
        backend = self.backend
        _zeros = ar.get_lib_fn(backend, "zeros")
        _concat = ar.get_lib_fn(backend, "concatenate")
        blocks = self.blocks

        def _recurse_all_chunks(partial_label=()):
            i = len(partial_label)
            if i == self.ndim:
                # full label, return the block, making zeros if necessary
                array = blocks.get(partial_label, None)
                if array is None:
                    array = _zeros(
                        self.block_shape(partial_label), dtype=self.dtype
                    )
                return array
            else:
                # partial label -> recurse further
                arrays = tuple(
                    _recurse_all_chunks(partial_label + (c,))
                    for c in range(1, self._indices[i].num_chunks + 1)
                )
                # then concatenate along the current axis
                return _concat(arrays, axis=i)

        dense = _recurse_all_chunks()
        if all(ix.num_chunks == 1 for ix in self._indices):
            # result could be a view of a single block
            dense = ar.do("copy", dense, like=backend)
        return dense

    def check(self):
        """Check that the index spaces, offset table and flat data are all
        consistent.
        """
        for ix in self._indices:
            ix.check()

        self._offsets.check(self._indices)

        if ar.ndim(self._data) != 1:
            raise ValueError(
                f"Flat data should be 1D, got shape {ar.shape(self._data)}."
            )
        if ar.size(self._data) != self._offsets.total_nonzero_elements():
            raise ValueError(
                f"Flat data has size {ar.size(self._data)} but the blocks "
                f"cover {self._offsets.total_nonzero_elements()} elements."
            )
        if not ar.do(
            "all",
            ar.do("isfinite", self._data, like=self.backend),
            like=self.backend,
        ):
            raise ValueError("Tensor contains non-finite values.")

    def allclose(self, other, **allclose_opts):
        """Test whether this tensor is close to another, that is, has the
        same chunk structure and all elements are close. Blocks present in
        only one of the tensors must be close to zero.
        """
        if self.ndim != other.ndim:
            return False
        if not all(a.matches(b) for a, b in zip(self._indices, other.indices)):
            return False

        _allclose = ar.get_lib_fn(self.backend, "allclose")
        labels_x = set(self.labels)
        labels_y = set(other.labels)

        for label in labels_x & labels_y:
            if not _allclose(
                self.block_view(label),
                other.block_view(label),
                **allclose_opts,
            ):
                return False
        for label in labels_x - labels_y:
            if not _allclose(self.block_view(label), 0.0, **allclose_opts):
                return False
        for label in labels_y - labels_x:
            if not _allclose(other.block_view(label), 0.0, **allclose_opts):
                return False

        return True

    # ----------------------------- arithmetic ------------------------------ #

    def check_compatible(self, other):
        """Check that ``other`` has the same chunk structure on every axis,
        raising ``IncompatibleIndexSpaces`` if not.
        """
        if self.ndim != other.ndim:
            raise IncompatibleIndexSpaces(
                f"Tensors have different numbers of axes: "
                f"{self.ndim} != {other.ndim}."
            )
        for ax, (a, b) in enumerate(zip(self._indices, other.indices)):
            if not a.matches(b):
                raise IncompatibleIndexSpaces(
                    f"Index spaces on axis {ax} do not match: {a} != {b}."
                )

    def _binary_blockwise_op(self, other, fn, missing="outer", inplace=False):
        """Apply a binary blockwise operation to two block sparse tensors with
        the same chunk structure.

        Parameters
        ----------
        other : BlockSparseTensor
            The other tensor.
        fn : callable
            Function to apply to the blocks of the tensors, with signature
            ``fn(x_block, y_block) -> result_block``. Missing blocks are
            supplied as the scalar ``0``.
        missing : {"outer", "inner"}, optional
            If "outer", blocks present in either tensor are kept. If "inner",
            blocks present in only one of the tensors are dropped.
        inplace : bool, optional
            Whether to modify this tensor in place.

        Returns
        -------
        BlockSparseTensor
        """
        self.check_compatible(other)

        if self._offsets == other.offsets:
            # identical block structure: operate on the flat data directly
            return self._modify_or_copy(
                data=fn(self._data, other.data), inplace=inplace
            )

        labels_x = set(self.labels)
        labels_y = set(other.labels)
        if missing == "outer":
            labels = sorted(labels_x | labels_y)
        elif missing == "inner":
            labels = sorted(labels_x & labels_y)
        else:
            raise ValueError(f"Unknown missing mode: {missing}.")

        arrays = []
        for label in labels:
            if label not in labels_y:
                arrays.append(fn(self.block_view(label), 0))
            elif label not in labels_x:
                arrays.append(fn(0, other.block_view(label)))
            else:
                arrays.append(
                    fn(self.block_view(label), other.block_view(label))
                )

        dtype = ar.get_dtype_name(fn(self._data[:0], other.data[:0]))
        offsets = BlockOffsetTable._from_sorted(
            labels,
            [
                tuple(ix.size_of(c) for ix, c in zip(self._indices, label))
                for label in labels
            ],
        )
        return self._modify_or_copy(
            offsets=offsets,
            data=_pack(arrays, dtype=dtype, like=self.backend),
            inplace=inplace,
        )

    def __add__(self, other):
        if isinstance(other, BlockSparseTensor):
            return self._binary_blockwise_op(other, fn=operator.add)
        # addition with non-matching block array breaks sparsity
        raise NotImplementedError(
            f"Addition with {type(other)} not implemented."
        )

    def __radd__(self, other):
        if isinstance(other, numbers.Number) and other == 0:
            # allows ``sum`` of tensors
            return self.copy()
        raise NotImplementedError(
            f"Addition with {type(other)} not implemented."
        )

    def __iadd__(self, other):
        if isinstance(other, BlockSparseTensor):
            return self._binary_blockwise_op(
                other, fn=operator.add, inplace=True
            )
        raise NotImplementedError(
            f"Addition with {type(other)} not implemented."
        )

    def __sub__(self, other):
        if isinstance(other, BlockSparseTensor):
            return self._binary_blockwise_op(other, fn=operator.sub)
        # subtraction with non-matching block array breaks sparsity
        raise NotImplementedError(
            f"Subtraction with {type(other)} not implemented."
        )

    def __isub__(self, other):
        if isinstance(other, BlockSparseTensor):
            return self._binary_blockwise_op(
                other, fn=operator.sub, inplace=True
            )
        raise NotImplementedError(
            f"Subtraction with {type(other)} not implemented."
        )

    def __mul__(self, other):
        if isinstance(other, BlockSparseTensor):
            return self._binary_blockwise_op(
                other, fn=operator.mul, missing="inner"
            )
        return BlockrayCommon.__mul__(self, other)

    def __imul__(self, other):
        if isinstance(other, BlockSparseTensor):
            return self._binary_blockwise_op(
                other, fn=operator.mul, missing="inner", inplace=True
            )
        return BlockrayCommon.__imul__(self, other)

    def tensordot(self, other, axes=2, **kwargs):
        """Contract this tensor with ``other``, see ``tensordot``."""
        return tensordot(self, other, axes, **kwargs)

    def __matmul__(self, other):
        return tensordot(self, other, 1)

    # -------------------------- structural ops ----------------------------- #

    def transpose(self, axes=None, inplace=False):
        """Permute the axes of this tensor. Every block label is permuted, and
        every block's data transposed, preserving the number of blocks and
        stored elements.

        Parameters
        ----------
        axes : sequence[int], optional
            The new order of the axes. If not given, the axes are reversed.
        inplace : bool, optional
            Whether to modify this tensor in place.
        """
        if axes is None:
            # reverse the axes
            axes = tuple(range(self.ndim - 1, -1, -1))
        else:
            axes = normalize_axes(axes, self.ndim)

        if sorted(axes) != list(range(self.ndim)):
            raise ValueError(
                f"Invalid permutation {axes} for tensor with {self.ndim} axes."
            )

        if axes == tuple(range(self.ndim)):
            return self if inplace else self.copy()

        _transpose = ar.get_lib_fn(self.backend, "transpose")
        new_blocks = {
            permuted(label, axes): _transpose(self.block_view(label), axes)
            for label in self.labels
        }
        offsets = self._offsets.permuted(axes)

        return self._modify_or_copy(
            indices=permuted(self._indices, axes),
            offsets=offsets,
            data=_pack(
                [new_blocks[label] for label in offsets.labels],
                dtype=self.dtype,
                like=self.backend,
            ),
            inplace=inplace,
        )

    def permute(self, perm, inplace=False):
        """Alias for ``transpose`` with an explicit permutation."""
        return self.transpose(perm, inplace=inplace)

    @property
    def T(self):
        return self.transpose()

    def _relabeled(self, new_indices, new_labels):
        """Modify this tensor in place, replacing the indices, and the label of
        each block (given in current canonical order) by ``new_labels``. The
        data of each block is reinterpreted with the new block shape.
        """
        new_indices = tuple(new_indices)
        shapes = [
            tuple(ix.size_of(c) for ix, c in zip(new_indices, label))
            for label in new_labels
        ]

        if list(new_labels) == sorted(new_labels):
            # order preserved -> the flat data can be reused as is
            offsets = BlockOffsetTable._from_sorted(new_labels, shapes)
            return self.modify(indices=new_indices, offsets=offsets)

        order = sorted(range(len(new_labels)), key=new_labels.__getitem__)
        offsets = BlockOffsetTable._from_sorted(
            [new_labels[i] for i in order], [shapes[i] for i in order]
        )
        data = _pack(
            [self.block_view_at(i) for i in order],
            dtype=self.dtype,
            like=self.backend,
        )
        return self.modify(indices=new_indices, offsets=offsets, data=data)

    def fuse(self, *axes_groups, inplace=False):
        """Fuse the given group or groups of axes. The new fused axes will be
        inserted at the minimum index of any fused axis (even if it is not in
        the first group). For example, ``x.fuse([5, 3], [7, 2, 6])`` will
        produce an array with axes like::

            groups inserted at axis 2, removed beyond that.
                   ......<--
            (0, 1, g0, g1, 4, 8, ...)
                   |   |
                   |   g1=(7, 2, 6)
                   g0=(5, 3)

        Each chunk of a fused axis corresponds to one tuple of chunks of the
        grouped axes, ordered row-major, so that every block maps to exactly
        one new block whose data is the original reshaped. The fused axes
        carry subindex information, which can be used to unfuse them.

        Parameters
        ----------
        axes_groups : sequence of sequences of int
            The axes to fuse. Each group of axes will be fused into a single
            axis.
        """
        # handle empty groups
        axes_groups = tuple(
            normalize_axes(g, self.ndim)
            for g in axes_groups
            if len(g)
        )
        if not axes_groups:
            # ... and no groups -> nothing to do
            return self if inplace else self.copy()

        all_axes = [ax for g in axes_groups for ax in g]
        if len(set(all_axes)) != len(all_axes):
            raise ValueError(f"Axes appear more than once in {axes_groups}.")

        # which group does each axis appear in, if any
        ax2group = {ax: g for g, axes in enumerate(axes_groups) for ax in axes}

        # n.b. all new groups will be inserted at the *first fused axis*
        position = min(all_axes)
        axes_before = tuple(ax for ax in range(position) if ax not in ax2group)
        axes_after = tuple(
            ax for ax in range(position, self.ndim) if ax not in ax2group
        )
        perm = (*axes_before, *all_axes, *axes_after)

        # after transposing the groups are contiguous
        new = self.transpose(perm, inplace=inplace)
        old_indices = new.indices

        new_indices = list(old_indices[:position])
        spans = []
        start = position
        for g in axes_groups:
            stop = start + len(g)
            new_indices.append(IndexSpace.fuse(*old_indices[start:stop]))
            spans.append((start, stop))
            start = stop
        new_indices.extend(old_indices[start:])

        fused = new_indices[position : position + len(spans)]

        def _fuse_label(label):
            return (
                *label[:position],
                *(
                    ix.subinfo.chunk_of(label[a:b])
                    for ix, (a, b) in zip(fused, spans)
                ),
                *label[start:],
            )

        new_labels = [_fuse_label(label) for label in new.labels]
        return new._relabeled(new_indices, new_labels)

    def unfuse(self, axis, inplace=False):
        """Unfuse the ``axis`` index, which must carry subindex information,
        likely generated automatically from a fusing operation.
        """
        (axis,) = normalize_axes((axis,), self.ndim)
        subinfo = self._indices[axis].subinfo
        if subinfo is None:
            raise ValueError(
                f"Axis {axis} does not carry subindex information."
            )

        new_indices = replace_with_seq(self._indices, axis, subinfo.indices)
        new_labels = [
            replace_with_seq(label, axis, subinfo.subchunks(label[axis]))
            for label in self.labels
        ]
        new = self if inplace else self.copy()
        return new._relabeled(new_indices, new_labels)

    def unfuse_all(self, inplace=False):
        """Unfuse all indices that carry subindex information, likely from a
        fusing operation.
        """
        new = self if inplace else self.copy()
        for ax in reversed(range(self.ndim)):
            if new.is_fused(ax):
                new.unfuse(ax, inplace=True)
        return new

    def _reshape_via_blocks(self, new_indices, inplace=False):
        new_indices = tuple(map(as_index_space, new_indices))

        if prod(ix.size_total for ix in new_indices) != self.size:
            raise IncompatibleReshapeTarget(
                f"Cannot reshape tensor of shape {self.shape} to index spaces "
                f"of shape {tuple(ix.size_total for ix in new_indices)}."
            )

        counts = [ix.num_chunks for ix in self._indices]
        new_counts = [ix.num_chunks for ix in new_indices]
        if prod(counts) != prod(new_counts):
            raise IncompatibleReshapeTarget(
                f"Cannot map a block grid of {counts} chunks onto one of "
                f"{new_counts} chunks."
            )

        new_labels = []
        for label, _, shape in self._offsets.items():
            new_label = unravel_label(ravel_label(label, counts), new_counts)
            new_shape = tuple(
                ix.size_of(c) for ix, c in zip(new_indices, new_label)
            )
            if prod(new_shape) != prod(shape):
                raise IncompatibleReshapeTarget(
                    f"Block {label} of shape {shape} cannot be reshaped to "
                    f"block {new_label} of shape {new_shape}."
                )
            new_labels.append(new_label)

        new = self if inplace else self.copy()
        return new._relabeled(new_indices, new_labels)

    def _reshape_via_fuse(self, newshape, inplace=False):
        axes_groups = reshape_to_fuse_axes(self.shape, newshape)
        return self.fuse(*axes_groups, inplace=inplace)

    def _reshape_via_unfuse(self, newshape, inplace=False):
        fused_axes = reshape_to_unfuse_axes(self._indices, newshape)
        # n.b. these are returned in descending order already
        new = self if inplace else self.copy()
        for i in fused_axes:
            new.unfuse(i, inplace=True)
        return new

    def reshape(self, newshape, inplace=False):
        """Reshape this tensor.

        ``newshape`` can either be a sequence of index spaces (or chunk size
        sequences), in which case every block is mapped onto the block with
        the same row-major position in the new block grid and its data is
        reshaped, or a dense shape of integers, in which case the reshape must
        be achievable by purely fusing or purely unfusing axes.
        """
        newshape = tuple(newshape)

        if not all(isinstance(d, numbers.Integral) for d in newshape):
            return self._reshape_via_blocks(newshape, inplace=inplace)

        newshape = _find_full_reshape(tuple(map(int, newshape)), self.size)
        if prod(newshape) != self.size:
            raise IncompatibleReshapeTarget(
                f"Cannot reshape tensor of shape {self.shape} to {newshape}."
            )

        if len(newshape) < self.ndim:
            return self._reshape_via_fuse(newshape, inplace=inplace)
        elif len(newshape) > self.ndim:
            return self._reshape_via_unfuse(newshape, inplace=inplace)
        elif newshape == self.shape:
            return self if inplace else self.copy()
        else:
            raise IncompatibleReshapeTarget(
                "Reshape with integer shape must be pure fuse or unfuse, "
                "supply index spaces to reinterpret the chunk structure."
            )

    def __str__(self):
        s = f"{self.__class__.__name__}(ndim={self.ndim}, dims=[\n"
        for ix in self._indices:
            s += f"    ({ix}),\n"
        s += (
            f"], num_blocks={self.num_blocks}, nnz={self.nnz}, "
            f"backend={self.backend}, dtype={self.dtype})"
        )
        return s

    def __repr__(self):
        return "".join(
            [
                f"{self.__class__.__name__}(",
                f"shape={self.shape}, ",
                f"num_blocks={self.num_blocks}, ",
                f"nnz={self.nnz})",
            ]
        )


# --------------------------------------------------------------------------- #


def index_to_state(ix):
    """Get a plain structural representation of an index space."""
    return {
        "sizes": list(ix.sizes),
        "qns": None if ix.qns is None else list(ix.qns),
        "subindices": (
            None
            if ix.subinfo is None
            else [index_to_state(s) for s in ix.subinfo.indices]
        ),
    }


def index_from_state(state):
    """Rebuild an index space from the output of ``index_to_state``."""
    subindices = state.get("subindices")
    subinfo = (
        None
        if subindices is None
        else SubIndexInfo(tuple(index_from_state(s) for s in subindices))
    )
    qns = state.get("qns")
    if qns is not None:
        # sequences may have been converted to lists by serialization
        qns = [tuple(q) if isinstance(q, list) else q for q in qns]
    return IndexSpace(state["sizes"], qns=qns, subinfo=subinfo)


# --------------------------------------------------------------------------- #


def parse_tensordot_axes(axes, ndim_a, ndim_b):
    """Parse the axes argument for single integer and also negative indices.
    Returning the 4 axes groups: the free axes of ``a``, the contracted axes
    of ``a`` and ``b``, and the free axes of ``b``.
    """
    if isinstance(axes, numbers.Integral):
        if not (0 <= axes <= min(ndim_a, ndim_b)):
            raise ContractionAxisMismatch(
                f"Cannot contract {axes} axes of arrays with {ndim_a} and "
                f"{ndim_b} dimensions."
            )
        axes_a = tuple(range(ndim_a - axes, ndim_a))
        axes_b = tuple(range(0, axes))
    else:
        axes_a, axes_b = axes
        if isinstance(axes_a, numbers.Integral):
            axes_a = (axes_a,)
        if isinstance(axes_b, numbers.Integral):
            axes_b = (axes_b,)
        if len(axes_a) != len(axes_b):
            raise ContractionAxisMismatch("Axes must have same length.")
        for ax, ndim in [(ax, ndim_a) for ax in axes_a] + [
            (ax, ndim_b) for ax in axes_b
        ]:
            if not (-ndim <= ax < ndim):
                raise ContractionAxisMismatch(
                    f"Axis {ax} out of range for array with {ndim} dimensions."
                )
        axes_a = tuple(x % ndim_a for x in axes_a)
        axes_b = tuple(x % ndim_b for x in axes_b)
        if (len(set(axes_a)) != len(axes_a)) or (
            len(set(axes_b)) != len(axes_b)
        ):
            raise ContractionAxisMismatch("Repeated axes in contraction.")

    # axes left on the left and right tensors respectively
    left_axes = without(range(ndim_a), axes_a)
    right_axes = without(range(ndim_b), axes_b)

    return left_axes, axes_a, axes_b, right_axes


def _tensordot_blockwise(a, b, left_axes, axes_a, axes_b, right_axes):
    """Perform a tensordot between two block sparse tensors, contracting each
    pair of aligned blocks separately and summing the contributions to each
    output block, in canonical order of (block a, block b) labels.
    """
    backend = a.backend
    _tensordot = ar.get_lib_fn(backend, "tensordot")

    # group blocks of `b` by which contracted chunks they are aligned to
    aligned_blocks = defaultdict(list)
    for label in b.labels:
        label_contracted = tuple(label[i] for i in axes_b)
        label_right = tuple(label[i] for i in right_axes)
        aligned_blocks[label_contracted].append((label_right, label))

    # accumulate the contributing pairs of each new block
    pairs = defaultdict(list)
    for label in a.labels:
        label_contracted = tuple(label[i] for i in axes_a)
        label_left = tuple(label[i] for i in left_axes)
        for label_right, label_b in aligned_blocks.get(label_contracted, ()):
            pairs[label_left + label_right].append((label, label_b))

    new_blocks = {}
    for new_label, label_pairs in pairs.items():
        new_blocks[new_label] = functools.reduce(
            operator.add,
            (
                _tensordot(
                    a.block_view(la), b.block_view(lb), axes=(axes_a, axes_b)
                )
                for la, lb in label_pairs
            ),
        )

    new_indices = without(a.indices, axes_a) + without(b.indices, axes_b)
    dtype = ar.get_dtype_name(a.data[:0] * b.data[:0])
    return BlockSparseTensor.from_blocks(new_indices, new_blocks, dtype=dtype)


def tensordot(a, b, axes=2, preserve_array=False):
    """Tensordot between two block sparse tensors.

    Parameters
    ----------
    a, b : BlockSparseTensor
        The tensors to be contracted.
    axes : int or tuple[int]
        The axes to contract. If an integer, the last ``axes`` axes of ``a``
        will be contracted with the first ``axes`` axes of ``b``. If a tuple,
        the axes to contract in ``a`` and ``b`` respectively.
    preserve_array : bool, optional
        Whether to return a 0-dimensional tensor rather than a scalar if all
        axes are contracted.

    Returns
    -------
    BlockSparseTensor or scalar
    """
    if not isinstance(b, BlockSparseTensor):
        if getattr(b, "ndim", 0) == 0:
            # assume scalar
            return a * b
        else:
            raise TypeError(f"Expected BlockSparseTensor, got {type(b)}.")

    if utils.DEBUG:
        a.check()
        b.check()

    left_axes, axes_a, axes_b, right_axes = parse_tensordot_axes(
        axes, a.ndim, b.ndim
    )

    for axa, axb in zip(axes_a, axes_b):
        if not a.indices[axa].matches(b.indices[axb]):
            raise ContractionAxisMismatch(
                f"Axis {axa} of a ({a.indices[axa]}) does not match "
                f"axis {axb} of b ({b.indices[axb]})."
            )

    c = _tensordot_blockwise(a, b, left_axes, axes_a, axes_b, right_axes)

    if (c.ndim == 0) and (not preserve_array):
        if c.num_blocks:
            return c.data[0]
        # no aligned blocks, return zero
        return c._zero()

    return c
