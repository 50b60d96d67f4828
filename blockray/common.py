"""Common interfaces for all blockray array objects."""

import operator

import autoray as ar

from .utils import lazyabstractmethod

_blockray_namespace = None


class BlockrayCommon:
    """Common functionality for array like objects that keep all of their
    numeric data in a single flat array, ``self._data``.
    """

    __slots__ = ()

    def __array_namespace__(self, api_version=None):
        """Return the namespace for the blockray module."""
        global _blockray_namespace
        if _blockray_namespace is None:
            import blockray

            _blockray_namespace = blockray
        return _blockray_namespace

    @lazyabstractmethod
    def copy(self) -> "BlockrayCommon":
        pass

    @property
    def dtype(self):
        """Get the dtype name of the stored data."""
        return ar.get_dtype_name(self._data)

    @property
    def backend(self):
        """Get the backend name of the stored data."""
        return ar.infer_backend(self._data)

    def apply_to_arrays(self, fn):
        """Apply the elementwise ``fn`` inplace to the stored data. ``fn``
        must map zero to zero if sparsity is to keep its meaning.
        """
        self._data = fn(self._data)

    def item(self):
        """Convert the array to a scalar if it stores a single element."""
        return self._data.item()

    def __float__(self):
        return float(self.item())

    def __complex__(self):
        return complex(self.item())

    def __int__(self):
        return int(self.item())

    def __bool__(self):
        return bool(self.item())

    def __mul__(self, other):
        new = self.copy()
        new.apply_to_arrays(lambda x: x * other)
        return new

    def __imul__(self, other):
        self.apply_to_arrays(lambda x: x * other)
        return self

    def __rmul__(self, other):
        return self * other

    def __truediv__(self, other):
        # dividing by implicit zeros not defined, so only scalars
        new = self.copy()
        new.apply_to_arrays(lambda x: x / other)
        return new

    def __itruediv__(self, other):
        self.apply_to_arrays(lambda x: x / other)
        return self

    def __neg__(self):
        new = self.copy()
        new.apply_to_arrays(operator.neg)
        return new

    def _do_unary_op(self, fn, inplace=False):
        """Perform a unary operation on the stored data."""
        new = self if inplace else self.copy()
        if isinstance(fn, str):
            fn = ar.get_lib_fn(self.backend, fn)
        new.apply_to_arrays(fn)
        return new

    def conj(self, inplace=False):
        """Get the complex conjugate of all elements in the array."""
        return self._do_unary_op("conj", inplace=inplace)

    def abs(self):
        """Get the absolute value of all elements in the array."""
        return self._do_unary_op("abs")

    def sqrt(self):
        """Get the square root of all elements in the array."""
        return self._do_unary_op("sqrt")

    def clip(self, a_min, a_max):
        """Clip the values in the array."""
        new = self.copy()
        _clip = ar.get_lib_fn(self.backend, "clip")
        new.apply_to_arrays(lambda x: _clip(x, a_min, a_max))
        return new

    def _do_reduction(self, fn):
        """Perform an (associative) reduction over all stored elements. Note
        that structurally zero elements are not included.
        """
        if isinstance(fn, str):
            fn = ar.get_lib_fn(self.backend, fn)
        return fn(self._data)

    def max(self):
        """Get the maximum stored element."""
        return self._do_reduction("max")

    def min(self):
        """Get the minimum stored element."""
        return self._do_reduction("min")

    def sum(self):
        """Get the sum of all elements in the array."""
        return self._do_reduction("sum")

    def all(self):
        """Check if all stored elements are True."""
        return self._do_reduction("all")

    def any(self):
        """Check if any element in the array is True."""
        return self._do_reduction("any")

    def norm(self):
        """Get the frobenius norm of the array."""
        return ar.do("linalg.norm", self._data, like=self.backend)

    @property
    def real(self):
        """Return the real part of the array."""
        return self._do_unary_op("real")

    @property
    def imag(self):
        """Return the imaginary part of the array."""
        return self._do_unary_op("imag")
