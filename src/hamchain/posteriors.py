"""Unnormalized posterior densities on bounded parameter spaces."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import numpy as np

from hamchain.autodiff import DEFAULT_BACKEND, gradient_or_fallback
from hamchain.errors import OutOfBoundsError

if TYPE_CHECKING:
    from typing import Optional

    from numpy.random import Generator
    from numpy.typing import ArrayLike

    from hamchain.types import GradientFunction, ScalarFunction


"""Log density value signalling a point outside the support of a posterior."""
INVALID_LOG_DENSITY = -np.inf


class HyperRectBounds:
    """Axis-aligned box defining the feasible region of a parameter space.

    Bounds may be infinite to leave a parameter unconstrained in one or both
    directions. Points are feasible when all their components are finite and lie
    within the closed interval for each dimension.
    """

    def __init__(self, lower: ArrayLike, upper: ArrayLike):
        """
        Args:
            lower: One-dimensional array of lower bounds.
            upper: One-dimensional array of upper bounds, of the same shape as
                `lower` and elementwise no smaller.
        """
        lower = np.asarray(lower, dtype=np.float64)
        upper = np.asarray(upper, dtype=np.float64)
        if lower.ndim != 1 or lower.shape != upper.shape:
            msg = "lower and upper must be one-dimensional arrays of equal shape."
            raise ValueError(msg)
        if np.any(np.isnan(lower)) or np.any(np.isnan(upper)) or np.any(lower > upper):
            msg = "Each lower bound must be less than or equal to its upper bound."
            raise ValueError(msg)
        self.lower = lower
        self.upper = upper

    @classmethod
    def unbounded(cls, ndim: int) -> HyperRectBounds:
        """Bounds leaving all `ndim` parameters unconstrained."""
        return cls(np.full(ndim, -np.inf), np.full(ndim, np.inf))

    @property
    def ndim(self) -> int:
        return self.lower.shape[0]

    def __contains__(self, v: ArrayLike) -> bool:
        v = np.asarray(v)
        return bool(
            v.shape == self.lower.shape
            and np.all(np.isfinite(v))
            and np.all(v >= self.lower)
            and np.all(v <= self.upper)
        )

    def __repr__(self) -> str:
        return f"HyperRectBounds(lower={self.lower}, upper={self.upper})"


class Posterior(ABC):
    """Unnormalized posterior density on a bounded parameter space."""

    @property
    @abstractmethod
    def bounds(self) -> HyperRectBounds:
        """Bounds defining the feasible region of the parameter space."""

    @property
    def ndim(self) -> int:
        """Total number of free parameters."""
        return self.bounds.ndim

    @abstractmethod
    def log_density(self, v: ArrayLike) -> float:
        """Logarithm of the unnormalized density at a point inside the bounds.

        Args:
            v: Parameter vector, assumed to be within bounds.

        Returns:
            Log density value.
        """

    @abstractmethod
    def grad_log_density_and_value(self, v: ArrayLike) -> tuple[ArrayLike, float]:
        """Gradient of the log density and the log density itself.

        Args:
            v: Parameter vector, assumed to be within bounds.

        Returns:
            Tuple of gradient array and log density value.
        """


class DensityPosterior(Posterior):
    """Posterior defined by a log density function and box bounds."""

    def __init__(
        self,
        log_density: ScalarFunction,
        bounds: HyperRectBounds | tuple[ArrayLike, ArrayLike] | int,
        *,
        grad_log_density: Optional[GradientFunction] = None,
        backend: Optional[str] = DEFAULT_BACKEND,
    ):
        """
        Args:
            log_density: Function which given a parameter vector returns the
                logarithm of the unnormalized posterior density.
            bounds: Feasible region, as a `HyperRectBounds` instance, a
                `(lower, upper)` tuple of arrays or an integer number of
                unconstrained parameters.
            grad_log_density: Function which given a parameter vector returns the
                gradient of `log_density`, optionally as the first entry of a
                `(gradient, value)` tuple. If `None` an automatic differentiation
                fallback is used.
            backend: Name of automatic differentiation backend used when
                `grad_log_density` is not given.
        """
        if isinstance(bounds, (int, np.integer)):
            bounds = HyperRectBounds.unbounded(int(bounds))
        elif not isinstance(bounds, HyperRectBounds):
            bounds = HyperRectBounds(*bounds)
        self._bounds = bounds
        self._log_density = log_density
        self._grad_log_density = gradient_or_fallback(
            grad_log_density, log_density, backend
        )

    @property
    def bounds(self) -> HyperRectBounds:
        return self._bounds

    def log_density(self, v: ArrayLike) -> float:
        return self._log_density(v)

    def grad_log_density_and_value(self, v: ArrayLike) -> tuple[ArrayLike, float]:
        result = self._grad_log_density(v)
        if isinstance(result, tuple):
            return result
        return result, self._log_density(v)


def eval_log_density(posterior: Posterior, v: ArrayLike) -> float:
    """Evaluate a posterior log density, checking bounds and finiteness.

    Never raises for infeasible points.

    Args:
        posterior: Posterior to evaluate.
        v: Parameter vector.

    Returns:
        Log density at `v`, or `INVALID_LOG_DENSITY` if `v` is outside the
        bounds or the log density is not finite.
    """
    if v not in posterior.bounds:
        return INVALID_LOG_DENSITY
    logd = float(posterior.log_density(np.asarray(v)))
    return logd if np.isfinite(logd) else INVALID_LOG_DENSITY


def eval_log_density_strict(posterior: Posterior, v: ArrayLike) -> float:
    """Evaluate a posterior log density, raising for infeasible points.

    Args:
        posterior: Posterior to evaluate.
        v: Parameter vector.

    Returns:
        Finite log density at `v`.

    Raises:
        OutOfBoundsError: If `v` is outside the posterior bounds or the log
            density at `v` is not finite.
    """
    if v not in posterior.bounds:
        msg = f"Parameter vector {v} is outside posterior bounds {posterior.bounds}."
        raise OutOfBoundsError(msg)
    logd = float(posterior.log_density(np.asarray(v)))
    if not np.isfinite(logd):
        msg = f"Log density at parameter vector {v} is not finite ({logd})."
        raise OutOfBoundsError(msg)
    return logd


def start_value(posterior: Posterior, rng: Generator, max_tries: int = 100) -> np.ndarray:
    """Draw an initial point with finite log density.

    Components with two finite bounds are drawn uniformly between them, those
    with one finite bound are offset from it by the absolute value of a standard
    normal variate and unbounded components are drawn from a standard normal.

    Args:
        posterior: Posterior to draw initial point for.
        rng: NumPy random number generator.
        max_tries: Number of draws to attempt.

    Returns:
        Parameter vector inside the bounds with finite log density.

    Raises:
        OutOfBoundsError: If no feasible point is found within `max_tries` draws.
    """
    lower, upper = posterior.bounds.lower, posterior.bounds.upper
    lower_finite, upper_finite = np.isfinite(lower), np.isfinite(upper)
    for _ in range(max_tries):
        u = rng.uniform(size=posterior.ndim)
        z = rng.standard_normal(posterior.ndim)
        with np.errstate(invalid="ignore"):
            v = np.where(lower_finite & upper_finite, lower + u * (upper - lower), z)
            v = np.where(lower_finite & ~upper_finite, lower + abs(z), v)
            v = np.where(~lower_finite & upper_finite, upper - abs(z), v)
        if np.isfinite(eval_log_density(posterior, v)):
            return v
    msg = f"Could not find a feasible initial point in {max_tries} draws."
    raise OutOfBoundsError(msg)
