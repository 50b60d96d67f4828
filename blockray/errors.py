"""Exceptions raised by blockray operations."""


class BlockrayError(Exception):
    """Base class for all blockray errors."""


class InvalidBlockLabel(BlockrayError, ValueError):
    """A block label has the wrong length, or a component is outside the
    range of chunks of the corresponding axis.
    """


class BlockNotFound(BlockrayError, KeyError):
    """A block label is valid but the block is not present (structurally
    zero).
    """


class IndexOutOfBounds(BlockrayError, IndexError):
    """A global coordinate lies outside the dimension of its axis."""


class IncompatibleIndexSpaces(BlockrayError, ValueError):
    """Two tensors combined elementwise have different chunk structures."""


class IncompatibleReshapeTarget(BlockrayError, ValueError):
    """A reshape target does not match the source dimension or block grid."""


class NonBlockDiagonalInput(BlockrayError, ValueError):
    """A decomposition was requested for a matrix whose present blocks share
    row or column chunks.
    """


class ContractionAxisMismatch(BlockrayError, ValueError):
    """Axes nominated for contraction do not have matching chunk structure."""
