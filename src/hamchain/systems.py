"""Hamiltonian systems encapsulating energy functions and their derivatives."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import numpy as np

from hamchain.errors import HamiltonianDivergenceError
from hamchain.metrics import IdentityMetric
from hamchain.posteriors import eval_log_density
from hamchain.states import cache_in_state, cache_in_state_with_aux

if TYPE_CHECKING:
    from typing import Optional

    from numpy.random import Generator
    from numpy.typing import ArrayLike

    from hamchain.metrics import EuclideanMetric
    from hamchain.posteriors import Posterior
    from hamchain.states import ChainState
    from hamchain.types import ScalarLike


class System(ABC):
    r"""Base class for Hamiltonian systems.

    The Hamiltonian function :math:`h` is assumed to have the general form

    .. math::

        h(q, p) = h_1(q) + h_2(q, p)

    where :math:`q` and :math:`p` are the position and momentum variables respectively,
    and :math:`h_1` the negative logarithm of the unnormalized posterior density on the
    position variables. The position space is bounded by the posterior bounds with
    :math:`h_1` taking the value :math:`+\infty` outside of them.
    """

    def __init__(self, posterior: Posterior):
        """
        Args:
            posterior: Posterior defining the target distribution on the position space.
        """
        self.posterior = posterior

    @cache_in_state("pos")
    def neg_log_dens(self, state: ChainState) -> ScalarLike:
        """Negative logarithm of unnormalized density of target distribution.

        Args:
            state: State to compute value at.

        Returns:
            Value of computed negative log density, infinite outside bounds.
        """
        return -eval_log_density(self.posterior, state.pos)

    @cache_in_state_with_aux("pos", "neg_log_dens")
    def grad_neg_log_dens(self, state: ChainState) -> ArrayLike:
        """Derivative of negative log density with respect to position.

        Args:
            state: State to compute value at.

        Returns:
            Value of `neg_log_dens(state)` derivative with respect to `state.pos`.

        Raises:
            HamiltonianDivergenceError: If the position is outside of the posterior
                bounds, as the trajectory has then left the support of the target.
        """
        if state.pos not in self.posterior.bounds:
            msg = "Trajectory left the bounds of the posterior."
            raise HamiltonianDivergenceError(msg)
        grad, val = self.posterior.grad_log_density_and_value(state.pos)
        return -np.asarray(grad), -val

    def h1(self, state: ChainState) -> ScalarLike:
        """Hamiltonian component depending only on position."""
        return self.neg_log_dens(state)

    def dh1_dpos(self, state: ChainState) -> ArrayLike:
        """Derivative of `h1` Hamiltonian component with respect to position."""
        return self.grad_neg_log_dens(state)

    def h1_flow(self, state: ChainState, dt: ScalarLike):
        """Apply exact flow map corresponding to `h1` Hamiltonian component.

        `state` argument is modified in place.

        Args:
            state: State to start flow at.
            dt: Time interval to simulate flow for.
        """
        state.mom -= dt * self.dh1_dpos(state)

    @abstractmethod
    def h2(self, state: ChainState) -> ScalarLike:
        """Hamiltonian component depending on momentum and optionally position."""

    @abstractmethod
    def dh2_dmom(self, state: ChainState) -> ArrayLike:
        """Derivative of `h2` Hamiltonian component with respect to momentum."""

    @abstractmethod
    def h2_flow(self, state: ChainState, dt: ScalarLike):
        """Apply exact flow map corresponding to `h2` Hamiltonian component.

        `state` argument is modified in place.

        Args:
            state: State to start flow at.
            dt: Time interval to simulate flow for.
        """

    def h(self, state: ChainState) -> ScalarLike:
        """Hamiltonian function for system.

        Args:
            state: State to compute value at.

        Returns:
            Value of Hamiltonian.
        """
        return self.h1(state) + self.h2(state)

    def dh_dmom(self, state: ChainState) -> ArrayLike:
        """Derivative of Hamiltonian with respect to momentum."""
        return self.dh2_dmom(state)

    @abstractmethod
    def sample_momentum(self, state: ChainState, rng: Generator) -> ArrayLike:
        """Sample a momentum from its conditional distribution given a position.

        Args:
            state: State defining position to condition on.
            rng: NumPy random number generator.

        Returns:
            Sampled momentum.
        """


class EuclideanMetricSystem(System):
    r"""Hamiltonian system with a Euclidean metric on the position space.

    Here Euclidean metric is defined to mean a metric with a fixed positive definite
    matrix representation :math:`M`. The momentum variables are taken to be independent
    of the position variables and with a zero-mean Gaussian marginal distribution with
    covariance specified by :math:`M`, so that the :math:`h_2` Hamiltonian component is

    .. math::

        h_2(q, p) = \frac{1}{2} p^T M^{-1} p

    where :math:`q` and :math:`p` are the position and momentum variables respectively.
    """

    def __init__(self, posterior: Posterior, metric: Optional[EuclideanMetric] = None):
        """
        Args:
            posterior: Posterior defining the target distribution on the position space.
            metric: Metric on the position space. Defaults to the identity metric.
        """
        super().__init__(posterior)
        self.metric = IdentityMetric() if metric is None else metric

    @cache_in_state("mom")
    def h2(self, state: ChainState) -> ScalarLike:
        return 0.5 * state.mom @ self.dh2_dmom(state)

    @cache_in_state("mom")
    def dh2_dmom(self, state: ChainState) -> ArrayLike:
        return self.metric.lmult_inv(state.mom)

    def h2_flow(self, state: ChainState, dt: ScalarLike):
        state.pos += dt * self.dh2_dmom(state)

    def sample_momentum(self, state: ChainState, rng: Generator) -> ArrayLike:
        return self.metric.lmult_sqrt(rng.standard_normal(state.pos.shape))
