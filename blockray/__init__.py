from . import linalg, utils
from .core import BlockSparseTensor
from .errors import (
    BlockNotFound,
    BlockrayError,
    ContractionAxisMismatch,
    IncompatibleIndexSpaces,
    IncompatibleReshapeTarget,
    IndexOutOfBounds,
    InvalidBlockLabel,
    NonBlockDiagonalInput,
)
from .index import IndexSpace, SubIndexInfo
from .interface import (
    abs,
    all,
    any,
    common_axes,
    conj,
    fuse,
    imag,
    max,
    min,
    norm,
    permute,
    real,
    reshape,
    sqrt,
    sum,
    tensordot,
    to_dense,
    transpose,
    uncommon_axes,
    unfuse,
)
from .linalg import svd, svd_truncated
from .offsets import BlockOffsetTable

__all__ = (
    "abs",
    "all",
    "any",
    "BlockNotFound",
    "BlockOffsetTable",
    "BlockrayError",
    "BlockSparseTensor",
    "common_axes",
    "conj",
    "ContractionAxisMismatch",
    "fuse",
    "imag",
    "IncompatibleIndexSpaces",
    "IncompatibleReshapeTarget",
    "IndexOutOfBounds",
    "IndexSpace",
    "InvalidBlockLabel",
    "linalg",
    "max",
    "min",
    "NonBlockDiagonalInput",
    "norm",
    "permute",
    "real",
    "reshape",
    "sqrt",
    "SubIndexInfo",
    "sum",
    "svd",
    "svd_truncated",
    "tensordot",
    "to_dense",
    "transpose",
    "uncommon_axes",
    "unfuse",
    "utils",
)
