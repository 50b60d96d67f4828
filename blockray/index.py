"""Index space objects describing how each axis is partitioned into chunks."""

import bisect
import itertools

from .errors import IndexOutOfBounds, InvalidBlockLabel
from .utils import accumulate_offsets, prod, ravel_label, unravel_label


class IndexSpace:
    """A single axis of a block sparse tensor, partitioned into contiguous
    chunks. This is intended to be used immutably.

    Parameters
    ----------
    sizes : sequence[int]
        The size of each chunk, in order along the axis.
    qns : sequence[hashable], optional
        A conserved quantity label for each chunk.
    subinfo : SubIndexInfo, optional
        Information about the index spaces this one was formed from, if it
        was created by fusing.
    """

    __slots__ = ("_sizes", "_qns", "_subinfo", "_offsets")

    def __init__(self, sizes, qns=None, subinfo=None):
        self._sizes = tuple(int(d) for d in sizes)
        self._qns = None if qns is None else tuple(qns)
        self._subinfo = subinfo
        self._offsets = None
        self.check()

    @property
    def sizes(self):
        """The sizes of the chunks of this index."""
        return self._sizes

    @property
    def qns(self):
        """The conserved quantity label of each chunk, or None."""
        return self._qns

    @property
    def subinfo(self):
        """Information about the subindices of this index, if it was formed
        from fusing.
        """
        return self._subinfo

    @property
    def num_chunks(self):
        """The number of chunks."""
        return len(self._sizes)

    @property
    def size_total(self):
        """The total size of this index, i.e. the sum of all chunk sizes."""
        return sum(self._sizes)

    @property
    def offsets(self):
        """The starting coordinate of each chunk."""
        if self._offsets is None:
            self._offsets = accumulate_offsets(self._sizes)
        return self._offsets

    @property
    def subshape(self):
        if self._subinfo is None:
            return None
        return self._subinfo.subshape

    def size_of(self, chunk):
        """The size of the (1-based) ``chunk``."""
        return self._sizes[chunk - 1]

    def qn_of(self, chunk):
        """The label of the (1-based) ``chunk``, or None if unlabelled."""
        if self._qns is None:
            return None
        return self._qns[chunk - 1]

    def slice_of(self, chunk):
        """The global coordinate range covered by ``chunk``."""
        start = self.offsets[chunk - 1]
        return slice(start, start + self._sizes[chunk - 1])

    def locate(self, coord):
        """Find which chunk the global (0-based) coordinate ``coord`` lies in.

        Returns
        -------
        chunk : int
            The 1-based chunk.
        intra : int
            The 0-based offset within that chunk.
        """
        coord = int(coord)
        if not (0 <= coord < self.size_total):
            raise IndexOutOfBounds(
                f"Coordinate {coord} out of bounds for index of "
                f"size {self.size_total}."
            )
        i = bisect.bisect_right(self.offsets, coord) - 1
        return i + 1, coord - self.offsets[i]

    def check(self):
        if not self._sizes:
            raise ValueError("An index space needs at least one chunk.")
        if any(d < 1 for d in self._sizes):
            raise ValueError(
                f"Chunk sizes must be positive, got {self._sizes}."
            )
        if (self._qns is not None) and (len(self._qns) != len(self._sizes)):
            raise ValueError(
                f"Got {len(self._qns)} labels for {len(self._sizes)} chunks."
            )
        if self._subinfo is not None:
            if self._subinfo.num_chunks != len(self._sizes):
                raise ValueError("Subindex information has wrong chunk count.")

    def matches(self, other):
        """Whether this index has the same chunk structure as ``other``, and
        the same labels if both are labelled.
        """
        if self._sizes != other._sizes:
            return False
        if (self._qns is None) or (other._qns is None):
            return True
        return self._qns == other._qns

    def copy_with(self, **kwargs):
        """A copy of this index with some attributes replaced."""
        new = self.__new__(self.__class__)
        new._sizes = tuple(kwargs.pop("sizes", self._sizes))
        qns = kwargs.pop("qns", self._qns)
        new._qns = None if qns is None else tuple(qns)
        # need to pop from kwargs to handle 'not-set' vs 'set-to-None'
        new._subinfo = kwargs.pop("subinfo", self._subinfo)
        new._offsets = None
        if kwargs:
            raise TypeError(f"Unexpected keyword arguments: {kwargs}")
        new.check()
        return new

    def drop_subinfo(self):
        """A copy of this index without any fusing information."""
        if self._subinfo is None:
            return self
        return self.copy_with(subinfo=None)

    @classmethod
    def fuse(cls, *indices):
        """Create the index formed by fusing ``indices``: each chunk is a
        tuple of sub-chunks, ordered row-major, with size the product of the
        sub-chunk sizes.
        """
        indices = tuple(indices)
        if len(indices) == 0:
            raise ValueError("Need at least one index to fuse.")

        sizes = tuple(
            prod(ds) for ds in itertools.product(*(ix.sizes for ix in indices))
        )
        if all(ix.qns is not None for ix in indices):
            qns = tuple(itertools.product(*(ix.qns for ix in indices)))
        else:
            qns = None

        return cls(sizes, qns=qns, subinfo=SubIndexInfo(indices))

    def __eq__(self, other):
        if not isinstance(other, IndexSpace):
            return NotImplemented
        return (self._sizes == other._sizes) and (self._qns == other._qns)

    def __hash__(self):
        return hash((self.__class__.__name__, self._sizes, self._qns))

    def __str__(self):
        s = f"{self.size_total} = {'+'.join(map(str, self._sizes))}"
        if self._qns is not None:
            s += f" : [{','.join(map(str, self._qns))}]"
        return s

    def __repr__(self):
        return "".join(
            [
                f"{self.__class__.__name__}(",
                f"sizes={self._sizes}",
                f", qns={self._qns}" if self._qns is not None else "",
                (
                    f", subinfo={self._subinfo}"
                    if self._subinfo is not None
                    else ""
                ),
                ")",
            ]
        )


class SubIndexInfo:
    """Holder class for storing the relevant information for unfusing.

    Parameters
    ----------
    indices : tuple[IndexSpace]
        The indices (ordered) that were fused to make this index.
    """

    __slots__ = ("_indices",)

    def __init__(self, indices):
        self._indices = tuple(indices)

    @property
    def indices(self):
        """The indices that were fused to make this index."""
        return self._indices

    @property
    def subshape(self):
        return tuple(ix.size_total for ix in self._indices)

    @property
    def counts(self):
        """The number of chunks of each subindex."""
        return tuple(ix.num_chunks for ix in self._indices)

    @property
    def num_chunks(self):
        return prod(self.counts)

    def subchunks(self, chunk):
        """The tuple of sub-chunks that fused ``chunk`` corresponds to."""
        return unravel_label(chunk - 1, self.counts)

    def chunk_of(self, subchunks):
        """The fused chunk that the tuple ``subchunks`` maps to."""
        return ravel_label(subchunks, self.counts) + 1

    def subblock_shape(self, chunk):
        return tuple(
            ix.size_of(c)
            for ix, c in zip(self._indices, self.subchunks(chunk))
        )

    def __eq__(self, other):
        if not isinstance(other, SubIndexInfo):
            return NotImplemented
        return self._indices == other._indices

    def __hash__(self):
        return hash(self._indices)

    def __repr__(self):
        return f"{self.__class__.__name__}(indices={self._indices})"


def as_index_space(x):
    """Convert ``x`` to an ``IndexSpace``, if it is not already one."""
    if isinstance(x, IndexSpace):
        return x
    return IndexSpace(x)


def check_label(label, indices):
    """Normalize ``label`` to a tuple of python ints and check it is a valid
    block label for an array with ``indices``.
    """
    try:
        label = tuple(int(c) for c in label)
    except (TypeError, ValueError):
        raise InvalidBlockLabel(
            f"Block label {label!r} is not a sequence of integers."
        )

    if len(label) != len(indices):
        raise InvalidBlockLabel(
            f"Block label {label} has length {len(label)}, "
            f"expected {len(indices)}."
        )

    for ax, (c, ix) in enumerate(zip(label, indices)):
        if not (1 <= c <= ix.num_chunks):
            raise InvalidBlockLabel(
                f"Block label {label} has component {c} on axis {ax}, "
                f"which only has chunks 1..{ix.num_chunks}."
            )

    return label
