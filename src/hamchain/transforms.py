"""Invertible changes of variables tracking log absolute Jacobian determinants.

A variate transform `T` maps a parameter vector `v` to `T(v)`. Applied with an
incoming log absolute Jacobian determinant (LADJ) value, as `T(v, prev_ladj)`, it
returns a :py:class:`TransformResult` combining the LADJ of `T` at `v` with
`prev_ladj`. Applied to a :py:class:`hamchain.samples.Sample` the log density of the
sample is corrected for the change of variables, that is `logd - ladj`.

Transforms compose with the `@` operator, `(T2 @ T1)(v) == T2(T1(v))`, and invert
with the :py:attr:`VariateTransform.inverse` property. Composition with an identity
transform on either side returns the other operand unchanged.
"""

from __future__ import annotations

import copy
import logging
import os
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, NamedTuple

import numpy as np
from scipy.special import expit, log_expit, logit

from hamchain.samples import Sample, SampleBuffer
from hamchain.utils import thread_pool

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import ArrayLike

    from hamchain.types import OptionalLADJ


logger = logging.getLogger(__name__)

MISSING_LADJ = None
"""Sentinel for an undefined log absolute Jacobian determinant."""


def combine_ladj(
    trafo_ladj: OptionalLADJ, prev_ladj: OptionalLADJ, target_is_inf: bool
) -> OptionalLADJ:
    """Combine the LADJ of a transform with an incoming LADJ.

    The values are added, with a missing value on either side giving a missing
    result. A sum of a negative infinite transform LADJ and a positive infinite
    incoming LADJ is taken to be zero if the transformed value is infinite, as the
    target density vanishing at infinity is assumed to dominate. Any other `nan` sum
    is returned as is.

    Args:
        trafo_ladj: LADJ of the transform at the input value.
        prev_ladj: Incoming LADJ.
        target_is_inf: Whether the transformed value has an infinite component.

    Returns:
        Combined LADJ value or `MISSING_LADJ`.
    """
    if trafo_ladj is MISSING_LADJ or prev_ladj is MISSING_LADJ:
        return MISSING_LADJ
    ladj_sum = trafo_ladj + prev_ladj
    if not np.isnan(ladj_sum):
        return ladj_sum
    if trafo_ladj == -np.inf and prev_ladj == np.inf and target_is_inf:
        return 0.0
    logger.debug(
        f"Combining transform LADJ {trafo_ladj} with incoming LADJ {prev_ladj} "
        "gives nan."
    )
    return ladj_sum


class TransformResult(NamedTuple):
    """Transformed value and combined LADJ."""

    v: Any
    ladj: OptionalLADJ


_NO_LADJ = object()


def _any_inf(v: ArrayLike) -> bool:
    return bool(np.any(np.isinf(v)))


class VariateTransform(ABC):
    """Base class for invertible changes of variables.

    Subclasses implement :py:meth:`_apply` and :py:meth:`_apply_inverse`, and may
    override :py:attr:`inverse` if the inverse is itself naturally a transform of
    the same family.
    """

    is_identity = False

    @property
    def input_dim(self) -> int | None:
        """Dimension of input vectors or `None` if not fixed."""
        return None

    @property
    def output_dim(self) -> int | None:
        """Dimension of output vectors or `None` if not fixed."""
        return None

    @abstractmethod
    def _apply(self, v: ArrayLike, prev_ladj: OptionalLADJ) -> TransformResult:
        """Apply the transform to a value, combining LADJ with `prev_ladj`."""

    @abstractmethod
    def _apply_inverse(self, v: ArrayLike, prev_ladj: OptionalLADJ) -> TransformResult:
        """Apply the inverse transform to a value, combining LADJ with `prev_ladj`."""

    def __call__(self, v, prev_ladj=_NO_LADJ):
        """Apply the transform.

        Args:
            v: Value or :py:class:`hamchain.samples.Sample` to transform.
            prev_ladj: Incoming LADJ. If given, a :py:class:`TransformResult` is
                returned rather than only the transformed value.

        Returns:
            Transformed value, transform result or transformed sample.
        """
        if isinstance(v, Sample):
            return self._apply_to_sample(v)
        if prev_ladj is _NO_LADJ:
            return self._apply(v, MISSING_LADJ).v
        return self._apply(v, prev_ladj)

    def _apply_to_sample(self, sample: Sample) -> Sample:
        result = self._apply(sample.v, 0.0)
        return sample._replace(v=result.v, logd=sample.logd - result.ladj)

    @property
    def inverse(self) -> VariateTransform:
        """Inverse transform."""
        return InverseTransform(self)

    def __matmul__(self, other: VariateTransform) -> VariateTransform:
        if not isinstance(other, VariateTransform):
            return NotImplemented
        return compose(self, other)

    def with_logabsdet_jacobian(self, v: ArrayLike) -> tuple[Any, float]:
        """Transformed value and LADJ of the transform at `v`."""
        result = self._apply(v, 0.0)
        return result.v, result.ladj

    def ladj_of(self) -> Callable:
        """Function computing the LADJ of the transform at a value.

        The returned function accepts a value and an optional incoming LADJ
        defaulting to zero.
        """
        return lambda v, prev_ladj=0.0: self._apply(v, prev_ladj).ladj


class IdentityTransform(VariateTransform):
    """Transform leaving values, LADJ and samples unchanged."""

    is_identity = True

    def __init__(self, ndim: int | None = None):
        """
        Args:
            ndim: Dimension of values or `None` if not fixed.
        """
        self.ndim = ndim

    @property
    def input_dim(self):
        return self.ndim

    @property
    def output_dim(self):
        return self.ndim

    def _apply(self, v, prev_ladj):
        return TransformResult(v, prev_ladj)

    def _apply_inverse(self, v, prev_ladj):
        return TransformResult(v, prev_ladj)

    def _apply_to_sample(self, sample):
        return sample

    @property
    def inverse(self):
        return self

    def __eq__(self, other):
        if not isinstance(other, IdentityTransform):
            return NotImplemented
        return self.ndim == other.ndim

    def __hash__(self):
        return hash((IdentityTransform, self.ndim))

    def __repr__(self):
        return f"IdentityTransform(ndim={self.ndim})"


class InverseTransform(VariateTransform):
    """Inverse of a transform, whose own inverse is the wrapped transform."""

    def __init__(self, transform: VariateTransform):
        self.transform = transform

    @property
    def input_dim(self):
        return self.transform.output_dim

    @property
    def output_dim(self):
        return self.transform.input_dim

    def _apply(self, v, prev_ladj):
        return self.transform._apply_inverse(v, prev_ladj)

    def _apply_inverse(self, v, prev_ladj):
        return self.transform._apply(v, prev_ladj)

    @property
    def inverse(self):
        return self.transform

    def __eq__(self, other):
        if not isinstance(other, InverseTransform):
            return NotImplemented
        return self.transform == other.transform

    def __hash__(self):
        return hash((InverseTransform, self.transform))

    def __repr__(self):
        return f"InverseTransform({self.transform!r})"


class ComposedTransform(VariateTransform):
    """Sequential application of transforms.

    Nested compositions are flattened so composition is associative. The component
    transforms are stored in order of application.
    """

    def __init__(self, transforms: Sequence[VariateTransform]):
        """
        Args:
            transforms: Transforms in the order they are applied. Must contain at
                least two transforms, none of which is an identity transform.
        """
        flattened = []
        for transform in transforms:
            if isinstance(transform, ComposedTransform):
                flattened.extend(transform.transforms)
            else:
                flattened.append(transform)
        if len(flattened) < 2:
            msg = "A composed transform requires at least two component transforms."
            raise ValueError(msg)
        for inner, outer in zip(flattened[:-1], flattened[1:]):
            if None not in (inner.output_dim, outer.input_dim) and (
                inner.output_dim != outer.input_dim
            ):
                msg = (
                    f"Output dimension {inner.output_dim} of {inner!r} does not match "
                    f"input dimension {outer.input_dim} of {outer!r}."
                )
                raise ValueError(msg)
        self.transforms = tuple(flattened)

    @property
    def input_dim(self):
        return self.transforms[0].input_dim

    @property
    def output_dim(self):
        return self.transforms[-1].output_dim

    def _apply(self, v, prev_ladj):
        result = TransformResult(v, prev_ladj)
        for transform in self.transforms:
            result = transform._apply(*result)
        return result

    def _apply_inverse(self, v, prev_ladj):
        result = TransformResult(v, prev_ladj)
        for transform in reversed(self.transforms):
            result = transform._apply_inverse(*result)
        return result

    @property
    def inverse(self):
        return ComposedTransform([t.inverse for t in reversed(self.transforms)])

    def __eq__(self, other):
        if not isinstance(other, ComposedTransform):
            return NotImplemented
        return self.transforms == other.transforms

    def __hash__(self):
        return hash((ComposedTransform, self.transforms))

    def __repr__(self):
        return f"ComposedTransform({list(self.transforms)!r})"


def _compose_pair(outer: VariateTransform, inner: VariateTransform) -> VariateTransform:
    if inner.is_identity:
        return outer
    if outer.is_identity:
        return inner
    return ComposedTransform([inner, outer])


def compose(*transforms: VariateTransform) -> VariateTransform:
    """Compose transforms, the rightmost being applied first.

    `compose(t3, t2, t1)(v) == t3(t2(t1(v)))`. Identity transforms are dropped from
    the composition, with a composition of only identities giving the leftmost.

    Args:
        *transforms: One or more transforms.

    Returns:
        Composed transform.
    """
    if not transforms:
        msg = "At least one transform must be given."
        raise ValueError(msg)
    result = transforms[-1]
    for outer in reversed(transforms[:-1]):
        result = _compose_pair(outer, result)
    return result


def ladj_of(transform: VariateTransform) -> Callable:
    """Function computing the LADJ of `transform` at a value."""
    return transform.ladj_of()


class AffineTransform(VariateTransform):
    """Elementwise affine map `v -> shift + scale * v`."""

    def __init__(self, shift: ArrayLike = 0.0, scale: ArrayLike = 1.0):
        """
        Args:
            shift: Scalar or vector offset.
            scale: Scalar or vector of non-zero scale factors.
        """
        self.shift = np.asarray(shift, dtype=np.float64)
        self.scale = np.asarray(scale, dtype=np.float64)
        if np.any(self.scale == 0):
            msg = "Scale factors of an affine transform must be non-zero."
            raise ValueError(msg)
        ndims = {np.size(a) for a in (self.shift, self.scale) if np.ndim(a) > 0}
        if len(ndims) > 1:
            msg = f"Shapes of shift {self.shift.shape} and scale {self.scale.shape} differ."
            raise ValueError(msg)
        self._ndim = ndims.pop() if ndims else None

    @property
    def input_dim(self):
        return self._ndim

    @property
    def output_dim(self):
        return self._ndim

    def _log_abs_scale(self, v) -> float:
        return float(np.sum(np.broadcast_to(np.log(abs(self.scale)), np.shape(v))))

    def _apply(self, v, prev_ladj):
        y = self.shift + self.scale * np.asarray(v)
        return TransformResult(
            y, combine_ladj(self._log_abs_scale(y), prev_ladj, _any_inf(y))
        )

    def _apply_inverse(self, v, prev_ladj):
        y = (np.asarray(v) - self.shift) / self.scale
        return TransformResult(
            y, combine_ladj(-self._log_abs_scale(y), prev_ladj, _any_inf(y))
        )

    def __repr__(self):
        return f"AffineTransform(shift={self.shift}, scale={self.scale})"


class ExpTransform(VariateTransform):
    """Elementwise exponential, mapping the real line onto the positive reals."""

    def _apply(self, v, prev_ladj):
        v = np.asarray(v, dtype=np.float64)
        y = np.exp(v)
        return TransformResult(y, combine_ladj(float(np.sum(v)), prev_ladj, _any_inf(y)))

    def _apply_inverse(self, v, prev_ladj):
        with np.errstate(divide="ignore"):
            y = np.log(np.asarray(v, dtype=np.float64))
        return TransformResult(
            y, combine_ladj(-float(np.sum(y)), prev_ladj, _any_inf(y))
        )

    def __repr__(self):
        return "ExpTransform()"


class LogisticIntervalTransform(VariateTransform):
    """Elementwise scaled logistic map from the real line onto `(lower, upper)`."""

    def __init__(self, lower: ArrayLike = 0.0, upper: ArrayLike = 1.0):
        """
        Args:
            lower: Scalar or vector of finite lower bounds.
            upper: Scalar or vector of finite upper bounds, greater than `lower`.
        """
        self.lower = np.asarray(lower, dtype=np.float64)
        self.upper = np.asarray(upper, dtype=np.float64)
        if not (np.all(np.isfinite(self.lower)) and np.all(np.isfinite(self.upper))):
            msg = "Interval bounds must be finite."
            raise ValueError(msg)
        if np.any(self.upper <= self.lower):
            msg = "Upper interval bounds must be greater than lower bounds."
            raise ValueError(msg)
        self.width = self.upper - self.lower
        self._ndim = np.size(self.width) if np.ndim(self.width) > 0 else None

    @property
    def input_dim(self):
        return self._ndim

    @property
    def output_dim(self):
        return self._ndim

    def _log_jacobian_diagonal(self, x):
        return np.log(self.width) + log_expit(x) + log_expit(-x)

    def _apply(self, v, prev_ladj):
        v = np.asarray(v, dtype=np.float64)
        y = self.lower + self.width * expit(v)
        trafo_ladj = float(np.sum(self._log_jacobian_diagonal(v)))
        return TransformResult(y, combine_ladj(trafo_ladj, prev_ladj, _any_inf(y)))

    def _apply_inverse(self, v, prev_ladj):
        u = (np.asarray(v, dtype=np.float64) - self.lower) / self.width
        with np.errstate(divide="ignore"):
            y = logit(u)
        trafo_ladj = -float(np.sum(self._log_jacobian_diagonal(y)))
        return TransformResult(y, combine_ladj(trafo_ladj, prev_ladj, _any_inf(y)))

    def __repr__(self):
        return f"LogisticIntervalTransform(lower={self.lower}, upper={self.upper})"


def _chunks(n: int, n_chunk: int) -> list[range]:
    bounds = np.linspace(0, n, n_chunk + 1).astype(int)
    return [range(start, stop) for start, stop in zip(bounds[:-1], bounds[1:])]


def _run_chunked(func: Callable[[range], None], n: int, n_workers: int | None):
    if n_workers is None:
        n_workers = os.cpu_count() or 1
    n_workers = max(1, min(n_workers, n))
    if n_workers == 1:
        func(range(n))
        return
    with thread_pool(n_workers) as pool:
        pool.map(func, _chunks(n, n_workers))


def map_transform(
    transform: VariateTransform,
    values: SampleBuffer | ArrayLike,
    n_workers: int | None = None,
) -> SampleBuffer | np.ndarray:
    """Apply a transform to each of a batch of values or samples.

    The outputs are written to freshly allocated storage whose shape and data type
    are determined by applying the transform to the first element. Each element is
    transformed independently, with the batch split across a pool of threads. An
    identity transform returns a deep copy of the input.

    Args:
        transform: Transform to apply.
        values: Sample buffer, two-dimensional array with one value per row or
            sequence of value vectors.
        n_workers: Number of threads to use. Defaults to the number of CPUs.

    Returns:
        Sample buffer of transformed samples (with log densities corrected by the
        LADJ of the transform) if `values` is a sample buffer, otherwise a
        two-dimensional array of transformed values.
    """
    if transform.is_identity:
        return copy.deepcopy(values)
    if isinstance(values, SampleBuffer):
        return _map_transform_samples(transform, values, n_workers)
    values = np.asarray(values)
    if values.ndim != 2:
        msg = f"Expected a two-dimensional array of values, got shape {values.shape}."
        raise ValueError(msg)
    n = values.shape[0]
    if n == 0:
        out_dim = transform.output_dim
        return np.empty((0, values.shape[1] if out_dim is None else out_dim))
    probe = np.asarray(transform(values[0]))
    outputs = np.empty((n, probe.size), dtype=probe.dtype)

    def transform_chunk(indices):
        for i in indices:
            outputs[i] = transform(values[i])

    _run_chunked(transform_chunk, n, n_workers)
    return outputs


def _map_transform_samples(
    transform: VariateTransform, samples: SampleBuffer, n_workers: int | None
) -> SampleBuffer:
    n = len(samples)
    if n == 0:
        out_dim = transform.output_dim
        return SampleBuffer(samples.ndim if out_dim is None else out_dim)
    probe = np.asarray(transform(samples.v[0]))
    outputs = SampleBuffer(probe.size, capacity=n)
    outputs.resize(n)
    outputs.weight[:] = samples.weight
    for name in ("chain_id", "cycle", "step", "sample_type"):
        getattr(outputs, name)[:] = getattr(samples, name)
    outputs.aux[:] = copy.deepcopy(samples.aux)
    out_v, out_logd = outputs.v, outputs.logd
    in_v, in_logd = samples.v, samples.logd

    def transform_chunk(indices):
        for i in indices:
            result = transform(in_v[i], 0.0)
            out_v[i] = result.v
            out_logd[i] = in_logd[i] - result.ladj

    _run_chunked(transform_chunk, n, n_workers)
    return outputs
