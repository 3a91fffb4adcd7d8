"""Euclidean metric classes.

For use with Hamiltonian systems with a Gaussian conditional distribution on
the momentum variables corresponding to a quadratic form for the kinetic energy
function.

Using a non-identity metric is equivalent to using an identity metric with a
reparameterisation of the target distribution on the position variables. This
effective reparameterisation can be used to rescale and decorrelate the
distribution on the position variables to improve the chain mixing performance.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import numpy as np
import scipy.linalg as sla

if TYPE_CHECKING:
    from numpy.typing import ArrayLike


class EuclideanMetric(ABC):
    """Abstract base class for Euclidean metric classes."""

    @abstractmethod
    def lmult(self, other: ArrayLike) -> ArrayLike:
        """Evaluate left-multiplication of argument by metric.

        Args:
            other: Array to left-multiply by metric.

        Returns:
            Result of performing `metric @ other`.
        """

    @abstractmethod
    def lmult_inv(self, other: ArrayLike) -> ArrayLike:
        """Evaluate left-multiplication of argument by inverse metric.

        Args:
            other: Array to left-multiply by inverse metric.

        Returns:
            Result of performing `inv(metric) @ other`.
        """

    @abstractmethod
    def lmult_sqrt(self, other: ArrayLike) -> ArrayLike:
        """Evaluate left-multiplication of argument by square-root of metric.

        Args:
            other: Array to left-multiply by square-root of metric.

        Returns:
            Result of performing `sqrtm(metric) @ other`.
        """


class IdentityMetric(EuclideanMetric):
    """Euclidean metric corresponding to an identity matrix.

    Equivalent to a kinetic energy of the form

        kin_energy(mom) = 0.5 * mom @ mom

    i.e. no rescaling is performed.
    """

    def lmult(self, other):
        return other

    def lmult_inv(self, other):
        return other

    def lmult_sqrt(self, other):
        return other


class DiagonalMetric(EuclideanMetric):
    """Euclidean metric corresponding to a diagonal matrix.

    Equivalent to a kinetic energy of the form

        kin_energy(mom) = 0.5 * (mom / metric_diagonal) @ mom

    i.e. a per component constant rescaling by metric is performed.
    """

    def __init__(self, diagonal: ArrayLike):
        """
        Args:
            diagonal: One-dimensional array of positive values specifying
                diagonal elements of metric.
        """
        diagonal = np.asarray(diagonal, dtype=np.float64)
        if diagonal.ndim != 1:
            msg = "diagonal should be a 1D array."
            raise ValueError(msg)
        if not np.all(diagonal > 0.0):
            msg = "diagonal should be all positive."
            raise ValueError(msg)
        self.diagonal = diagonal

    @classmethod
    def from_inverse(cls, inverse_diagonal: ArrayLike) -> DiagonalMetric:
        """Metric whose inverse has the given diagonal, e.g. variance estimates."""
        return cls(1.0 / np.asarray(inverse_diagonal, dtype=np.float64))

    def lmult(self, other):
        return (other.T * self.diagonal).T

    def lmult_inv(self, other):
        return (other.T / self.diagonal).T

    def lmult_sqrt(self, other):
        return (other.T * self.diagonal**0.5).T


class DenseMetric(EuclideanMetric):
    """Euclidean metric corresponding to a dense matrix.

    Equivalent to a kinetic energy of the form

        kin_energy(mom) = 0.5 * mom @ inv(metric) @ mom

    where `inv` indicates the matrix inverse.
    """

    def __init__(self, metric: ArrayLike):
        """
        Args:
            metric: Two-dimensional array specifying metric. Should be symmetric
                and positive-definite.
        """
        metric = np.asarray(metric, dtype=np.float64)
        if metric.ndim != 2:
            msg = "metric should be a two-dimensional array."
            raise ValueError(msg)
        if not np.allclose(metric, metric.T):
            msg = "metric should be a symmetric matrix (2D array)."
            raise ValueError(msg)
        self.metric = metric
        try:
            self.chol = sla.cholesky(metric, lower=True)
        except sla.LinAlgError as e:
            msg = "metric should be a positive-definite matrix (2D array)."
            raise ValueError(msg) from e

    @classmethod
    def from_inverse(cls, inverse: ArrayLike) -> DenseMetric:
        """Metric with the given inverse, e.g. a covariance matrix estimate."""
        chol_inverse = sla.cholesky(inverse, lower=True)
        inv_chol_inverse = sla.solve_triangular(
            chol_inverse, np.identity(chol_inverse.shape[0]), lower=True
        )
        metric = inv_chol_inverse.T @ inv_chol_inverse
        return cls(0.5 * (metric + metric.T))

    def lmult(self, other):
        return self.metric @ other

    def lmult_inv(self, other):
        return sla.cho_solve((self.chol, True), other)

    def lmult_sqrt(self, other):
        return self.chol @ other
