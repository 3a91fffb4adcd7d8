"""Utility functions and classes."""

from __future__ import annotations

from contextlib import contextmanager
from math import exp, inf, log, log1p
from multiprocessing.pool import ThreadPool
from typing import TYPE_CHECKING

import numpy as np
from numpy.random import Generator, Philox, SeedSequence

if TYPE_CHECKING:
    from collections.abc import Iterator

    from typing_extensions import Self

    from hamchain.types import ScalarLike, SeedLike


def log1p_exp(val: float) -> float:
    """Numerically stable implementation of `log(1 + exp(val))`."""
    if val > 0.0:
        return val + log1p(exp(-val))
    return log1p(exp(val))


def log_sum_exp(val1: float, val2: float) -> float:
    """Numerically stable implementation of `log(exp(val1) + exp(val2))`."""
    if val1 == -inf and val2 == -inf:
        return -inf
    if val1 > val2:
        return val1 + log1p_exp(val2 - val1)
    return val2 + log1p_exp(val1 - val2)


class LogRepFloat:
    """Numerically stable logarithmic representation of positive float values.

    Stores logarithm of value and overloads arithmetic operators to use more
    numerically stable implementations where possible. Used to accumulate the
    weights of states in dynamic trajectories, which can under or overflow when
    represented directly.
    """

    def __init__(self, val: float | None = None, log_val: float | None = None) -> None:
        if log_val is None:
            if val is None:
                msg = "One of val or log_val must be specified."
                raise ValueError(msg)
            if val > 0:
                self.log_val = log(val)
            elif val == 0.0:
                self.log_val = -inf
            else:
                msg = "val must be non-negative."
                raise ValueError(msg)
        else:
            if val is not None:
                msg = "Specify only one of val and log_val."
                raise ValueError(msg)
            self.log_val = log_val

    @property
    def val(self) -> float:
        try:
            return exp(self.log_val)
        except OverflowError:
            return inf

    def __add__(self, other: ScalarLike) -> ScalarLike:
        if isinstance(other, LogRepFloat):
            return LogRepFloat(log_val=log_sum_exp(self.log_val, other.log_val))
        return self.val + other

    def __radd__(self, other: ScalarLike) -> ScalarLike:
        return self.__add__(other)

    def __iadd__(self, other: ScalarLike) -> Self:
        if other == 0:
            return self
        if isinstance(other, LogRepFloat):
            self.log_val = log_sum_exp(self.log_val, other.log_val)
        else:
            self.log_val = log_sum_exp(self.log_val, log(other))
        return self

    def __mul__(self, other: ScalarLike) -> ScalarLike:
        if isinstance(other, LogRepFloat):
            return LogRepFloat(log_val=self.log_val + other.log_val)
        return self.val * other

    def __rmul__(self, other: ScalarLike) -> ScalarLike:
        return self.__mul__(other)

    def __truediv__(self, other: ScalarLike) -> ScalarLike:
        if isinstance(other, LogRepFloat):
            return LogRepFloat(log_val=self.log_val - other.log_val)
        return self.val / other

    def __rtruediv__(self, other: ScalarLike) -> ScalarLike:
        return other / self.val

    def __eq__(self, other: ScalarLike) -> bool:
        if isinstance(other, LogRepFloat):
            return self.log_val == other.log_val
        return self.val == other

    def __lt__(self, other: ScalarLike) -> bool:
        if isinstance(other, LogRepFloat):
            return self.log_val < other.log_val
        return self.val < other

    def __gt__(self, other: ScalarLike) -> bool:
        if isinstance(other, LogRepFloat):
            return self.log_val > other.log_val
        return self.val > other

    def __le__(self, other: ScalarLike) -> bool:
        return not self.__gt__(other)

    def __ge__(self, other: ScalarLike) -> bool:
        return not self.__lt__(other)

    def __str__(self) -> str:
        return str(self.val)

    def __repr__(self) -> str:
        return f"LogRepFloat(val={self.val})"

    def __array__(self, dtype=None, copy=None) -> np.ndarray:
        return np.array(self.val, dtype=dtype)


def _as_seed_sequence(seed: SeedLike) -> SeedSequence:
    if isinstance(seed, SeedSequence):
        return seed
    if isinstance(seed, Generator):
        bit_generator = seed.bit_generator
        # Public attribute only available from NumPy v1.25 onwards
        if hasattr(bit_generator, "seed_seq"):
            return bit_generator.seed_seq
        return bit_generator._seed_seq
    return SeedSequence(seed)


class RNGPartition:
    """Deterministic partition of a random number stream into keyed sub-streams.

    Each partition is identified by the entropy of a root seed sequence and a
    path of non-negative integer keys. The random number generator for a
    partition depends only on this identity, so deriving the generator for some
    key path gives bit-identical streams regardless of which other partitions
    were derived beforehand or in what order. Generators are backed by the
    counter based Philox bit generator.

    For example a chain with identifier `chain_id` in cycle `cycle` at step
    `step` draws its random numbers from

        RNGPartition(seed).subpartition(chain_id, cycle, step).generator()
    """

    def __init__(self, seed: SeedLike, key: tuple[int, ...] = ()):
        """
        Args:
            seed: Integer seed, NumPy `SeedSequence` or NumPy random number
                generator (whose seed sequence is used) to derive streams from.
            key: Path of non-negative integer keys identifying the partition
                relative to the root seed sequence.
        """
        seed_seq = _as_seed_sequence(seed)
        if any(int(k) < 0 for k in key):
            msg = f"Partition keys must be non-negative integers, got {key}."
            raise ValueError(msg)
        self._entropy = seed_seq.entropy
        self._pool_size = seed_seq.pool_size
        self.key = tuple(seed_seq.spawn_key) + tuple(int(k) for k in key)

    def seed_sequence(self) -> SeedSequence:
        """Seed sequence uniquely identifying this partition."""
        return SeedSequence(
            self._entropy, spawn_key=self.key, pool_size=self._pool_size
        )

    def subpartition(self, *key: int) -> RNGPartition:
        """Derive a nested partition by extending the key path.

        Args:
            *key: One or more non-negative integers to append to the key path.

        Returns:
            Partition identified by the extended key path.
        """
        return RNGPartition(self.seed_sequence(), key)

    def generator(self) -> Generator:
        """Create a fresh random number generator for this partition."""
        return Generator(Philox(self.seed_sequence()))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RNGPartition):
            return NotImplemented
        return self._entropy == other._entropy and self.key == other.key

    def __repr__(self) -> str:
        return f"RNGPartition(entropy={self._entropy}, key={self.key})"


@contextmanager
def thread_pool(n_workers: int) -> Iterator[ThreadPool]:
    """Context-managed thread pool which waits for all submitted work on exit.

    Compared to the built-in context-manager protocol of the pool, which terminates
    the workers immediately, the pool is closed to further work and then joined.

    Args:
        n_workers: Number of worker threads.
    """
    pool = ThreadPool(n_workers)
    try:
        yield pool
    finally:
        pool.close()
        pool.join()
