"""Sample records and growable struct-of-arrays sample buffers."""

from __future__ import annotations

from enum import IntEnum
from typing import TYPE_CHECKING, Any, NamedTuple

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from numpy.typing import ArrayLike


class SampleType(IntEnum):
    """Role of a sample within the live buffer of a chain."""

    INVALID = 0
    PROPOSED = 1
    CURRENT = 2
    ACCEPTED = 3


class SampleID(NamedTuple):
    """Provenance of a sample."""

    chain_id: int
    cycle: int
    step: int
    sample_type: SampleType


class Sample(NamedTuple):
    """An evaluated point in parameter space.

    Attributes:
        v: Parameter vector.
        logd: Log posterior density at `v`, or `-inf` if invalid.
        weight: Non-negative multiplicity of the sample.
        id: Provenance of the sample.
        aux: Optional auxiliary payload.
    """

    v: np.ndarray
    logd: float
    weight: float
    id: SampleID
    aux: Any = None


_ID_FIELDS = ("chain_id", "cycle", "step", "sample_type")


class SampleBuffer:
    """Ordered, resizable sequence of samples stored as parallel arrays.

    Parameter vectors are stored as the rows of a two-dimensional array and the scalar
    fields as one-dimensional arrays, all views of preallocated storage which grows
    geometrically as required. The array properties (e.g. :code:`buffer.weight`)
    return writable views of the live entries.
    """

    def __init__(self, ndim: int, capacity: int = 1):
        """
        Args:
            ndim: Dimension of the parameter vectors.
            capacity: Number of entries to preallocate storage for.
        """
        self.ndim = ndim
        self._size = 0
        capacity = max(capacity, 1)
        self._v = np.zeros((capacity, ndim))
        self._logd = np.full(capacity, -np.inf)
        self._weight = np.zeros(capacity)
        self._chain_id = np.zeros(capacity, dtype=np.int64)
        self._cycle = np.zeros(capacity, dtype=np.int64)
        self._step = np.zeros(capacity, dtype=np.int64)
        self._sample_type = np.zeros(capacity, dtype=np.int8)
        self._aux = []

    @classmethod
    def empty(cls, ndim: int) -> SampleBuffer:
        """Create an empty buffer for samples of dimension `ndim`."""
        return cls(ndim)

    @classmethod
    def from_samples(cls, samples: Iterable[Sample], ndim: int | None = None) -> SampleBuffer:
        """Create a buffer from an iterable of samples.

        Args:
            samples: Samples to store, in order.
            ndim: Parameter dimension, required only if `samples` is empty.
        """
        samples = list(samples)
        if ndim is None:
            if not samples:
                msg = "ndim must be specified to create a buffer from no samples."
                raise ValueError(msg)
            ndim = np.shape(samples[0].v)[0]
        buffer = cls(ndim, capacity=len(samples))
        for sample in samples:
            buffer.append(sample)
        return buffer

    @property
    def v(self) -> np.ndarray:
        return self._v[: self._size]

    @property
    def logd(self) -> np.ndarray:
        return self._logd[: self._size]

    @property
    def weight(self) -> np.ndarray:
        return self._weight[: self._size]

    @property
    def chain_id(self) -> np.ndarray:
        return self._chain_id[: self._size]

    @property
    def cycle(self) -> np.ndarray:
        return self._cycle[: self._size]

    @property
    def step(self) -> np.ndarray:
        return self._step[: self._size]

    @property
    def sample_type(self) -> np.ndarray:
        return self._sample_type[: self._size]

    @property
    def aux(self) -> list:
        return self._aux

    @property
    def capacity(self) -> int:
        return self._weight.shape[0]

    def __len__(self) -> int:
        return self._size

    def _reserve(self, capacity: int):
        if capacity <= self.capacity:
            return
        capacity = max(capacity, 2 * self.capacity)
        n_extra = capacity - self.capacity
        self._v = np.concatenate([self._v, np.zeros((n_extra, self.ndim))])
        self._logd = np.concatenate([self._logd, np.full(n_extra, -np.inf)])
        for name in ("_weight", "_chain_id", "_cycle", "_step", "_sample_type"):
            array = getattr(self, name)
            setattr(self, name, np.concatenate([array, np.zeros(n_extra, array.dtype)]))

    def resize(self, size: int):
        """Resize the buffer, truncating or appending invalid zero-weight entries.

        Args:
            size: New number of entries.
        """
        if size < 0:
            msg = "Buffer size must be non-negative."
            raise ValueError(msg)
        self._reserve(size)
        if size > self._size:
            new = slice(self._size, size)
            self._v[new] = 0.0
            self._logd[new] = -np.inf
            self._weight[new] = 0.0
            for name in _ID_FIELDS:
                getattr(self, f"_{name}")[new] = 0
            self._aux.extend([None] * (size - self._size))
        else:
            del self._aux[size:]
        self._size = size

    def clear(self):
        """Remove all entries."""
        self.resize(0)

    def _check_index(self, index: int) -> int:
        index = int(index)
        if index < 0:
            index += self._size
        if not 0 <= index < self._size:
            msg = f"Index {index} out of range for buffer of length {self._size}."
            raise IndexError(msg)
        return index

    def __getitem__(self, index: int | slice | ArrayLike) -> Sample | SampleBuffer:
        if isinstance(index, (int, np.integer)):
            i = self._check_index(index)
            return Sample(
                v=self._v[i].copy(),
                logd=float(self._logd[i]),
                weight=float(self._weight[i]),
                id=self.get_id(i),
                aux=self._aux[i],
            )
        indices = np.arange(self._size)[index]
        subset = type(self)(self.ndim, capacity=len(indices))
        subset.resize(len(indices))
        subset._v[: len(indices)] = self._v[indices]
        subset._logd[: len(indices)] = self._logd[indices]
        subset._weight[: len(indices)] = self._weight[indices]
        for name in _ID_FIELDS:
            getattr(subset, f"_{name}")[: len(indices)] = getattr(self, f"_{name}")[indices]
        subset._aux = [self._aux[i] for i in indices]
        return subset

    def __setitem__(self, index: int, sample: Sample):
        i = self._check_index(index)
        self._v[i] = sample.v
        self._logd[i] = sample.logd
        self._weight[i] = sample.weight
        self.set_id(i, sample.id)
        self._aux[i] = sample.aux

    def __iter__(self) -> Iterator[Sample]:
        for i in range(self._size):
            yield self[i]

    def get_id(self, index: int) -> SampleID:
        """Provenance of the entry at `index`."""
        i = self._check_index(index)
        return SampleID(
            chain_id=int(self._chain_id[i]),
            cycle=int(self._cycle[i]),
            step=int(self._step[i]),
            sample_type=SampleType(int(self._sample_type[i])),
        )

    def set_id(self, index: int, sample_id: SampleID):
        """Set the provenance of the entry at `index`."""
        i = self._check_index(index)
        for name, value in zip(_ID_FIELDS, sample_id):
            getattr(self, f"_{name}")[i] = value

    def append(self, sample: Sample):
        """Append a sample to the end of the buffer."""
        self.resize(self._size + 1)
        self[self._size - 1] = sample

    def extend(self, samples: SampleBuffer | Iterable[Sample]):
        """Append samples from another buffer or an iterable of samples."""
        if isinstance(samples, SampleBuffer):
            n, m = self._size, len(samples)
            self.resize(n + m)
            self._v[n : n + m] = samples.v
            self._logd[n : n + m] = samples.logd
            self._weight[n : n + m] = samples.weight
            for name in _ID_FIELDS:
                getattr(self, f"_{name}")[n : n + m] = getattr(samples, name)
            self._aux[n : n + m] = samples.aux
        else:
            for sample in samples:
                self.append(sample)

    def copy(self) -> SampleBuffer:
        """Independent copy of the buffer."""
        return self[:]

    def nonzero_weights(self) -> SampleBuffer:
        """Buffer of only the entries with non-zero weight."""
        return self[np.flatnonzero(self.weight != 0)]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(ndim={self.ndim}, len={self._size})"
