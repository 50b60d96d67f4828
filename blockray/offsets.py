"""Bookkeeping of where each present block lives in a flat backing store."""

import bisect

from .errors import BlockNotFound
from .index import check_label
from .utils import permuted, prod


class BlockOffsetTable:
    """An immutable mapping from each present block label to the offset of
    its data in a single flat store, and to its dense shape. Blocks are laid
    out contiguously in canonical (lexicographic) label order.

    Parameters
    ----------
    labels : sequence[tuple[int]]
        The labels of the present blocks, in any order, duplicates ignored.
    indices : sequence[IndexSpace]
        The index spaces that determine the shape of each block.
    """

    __slots__ = ("_labels", "_entries", "_total")

    def __init__(self, labels, indices):
        indices = tuple(indices)
        labels = sorted({check_label(label, indices) for label in labels})
        self._build(
            labels,
            [
                tuple(ix.size_of(c) for ix, c in zip(indices, label))
                for label in labels
            ],
        )

    def _build(self, labels, shapes):
        self._labels = tuple(labels)
        self._entries = {}
        offset = 0
        for label, shape in zip(labels, shapes):
            self._entries[label] = (offset, shape)
            offset += prod(shape)
        self._total = offset

    @classmethod
    def _from_sorted(cls, labels, shapes):
        """Create a table directly from already validated and sorted labels
        and their shapes, for internal use.
        """
        new = cls.__new__(cls)
        new._build(labels, shapes)
        return new

    @property
    def labels(self):
        """The present block labels, in canonical order."""
        return self._labels

    @property
    def num_blocks(self):
        return len(self._labels)

    def present(self, label):
        """Whether the block ``label`` is stored."""
        return tuple(label) in self._entries

    def offset_and_shape(self, label):
        """Get the offset into the flat store and dense shape of block
        ``label``, raising ``BlockNotFound`` if it is not present.
        """
        try:
            return self._entries[tuple(label)]
        except KeyError:
            raise BlockNotFound(f"Block {tuple(label)} is not present.")

    def shape_of(self, label):
        return self.offset_and_shape(label)[1]

    def index_of(self, label):
        """The 0-based canonical position of block ``label`` among all present
        blocks.
        """
        label = tuple(label)
        if label not in self._entries:
            raise BlockNotFound(f"Block {label} is not present.")
        return bisect.bisect_left(self._labels, label)

    def label_at(self, i):
        """The label of the ``i``-th present block, in canonical order."""
        return self._labels[i]

    def total_nonzero_elements(self):
        """The total number of stored elements, summed over blocks."""
        return self._total

    @property
    def nnz(self):
        return self._total

    def items(self):
        """Generate ``(label, offset, shape)`` for every present block, in
        canonical order.
        """
        for label in self._labels:
            offset, shape = self._entries[label]
            yield label, offset, shape

    def with_block(self, label, indices):
        """Get a new table with block ``label`` added, and the offset at which
        its data should be inserted into the store. If the block is already
        present, this table is returned unchanged.

        Returns
        -------
        table : BlockOffsetTable
        offset : int
        """
        label = check_label(label, indices)
        if label in self._entries:
            return self, self._entries[label][0]

        i = bisect.bisect_left(self._labels, label)
        offset = (
            self._entries[self._labels[i]][0]
            if i < len(self._labels)
            else self._total
        )
        shape = tuple(ix.size_of(c) for ix, c in zip(indices, label))

        labels = (*self._labels[:i], label, *self._labels[i:])
        shapes = [self._entries[lb][1] for lb in self._labels]
        shapes.insert(i, shape)
        return self._from_sorted(labels, shapes), offset

    def permuted(self, perm):
        """Get the table of the array with axes permuted by ``perm``. Note
        that the canonical order, and thus all offsets, generally change.
        """
        pairs = sorted(
            (permuted(label, perm), permuted(shape, perm))
            for label, (_, shape) in self._entries.items()
        )
        return self._from_sorted(
            [label for label, _ in pairs], [shape for _, shape in pairs]
        )

    def check(self, indices=None):
        """Check that the blocks partition the store exactly, and optionally
        that the shapes match ``indices``.
        """
        if list(self._labels) != sorted(set(self._labels)):
            raise ValueError("Block labels are not in canonical order.")

        expected = 0
        for label, offset, shape in self.items():
            if offset != expected:
                raise ValueError(
                    f"Block {label} starts at {offset}, expected {expected}."
                )
            if indices is not None:
                check_label(label, indices)
                block_shape = tuple(
                    ix.size_of(c) for ix, c in zip(indices, label)
                )
                if block_shape != tuple(shape):
                    raise ValueError(
                        f"Block {label} has shape {shape}, expected "
                        f"{block_shape}."
                    )
            expected += prod(shape)

        if expected != self._total:
            raise ValueError(
                f"Blocks cover {expected} elements, total is {self._total}."
            )

    def __contains__(self, label):
        return self.present(label)

    def __iter__(self):
        return iter(self._labels)

    def __len__(self):
        return len(self._labels)

    def __eq__(self, other):
        if not isinstance(other, BlockOffsetTable):
            return NotImplemented
        return self._entries == other._entries

    def __hash__(self):
        return hash(self._labels)

    def __repr__(self):
        return "".join(
            [
                f"{self.__class__.__name__}(",
                f"num_blocks={self.num_blocks}, ",
                f"nnz={self._total})",
            ]
        )
