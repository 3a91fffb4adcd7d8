"""Methods for adaptively setting algorithmic parameters of transitions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from math import exp, log
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

from hamchain.errors import AdaptationError, IntegratorError
from hamchain.metrics import DenseMetric, DiagonalMetric

if TYPE_CHECKING:
    from numpy.random import Generator
    from numpy.typing import ArrayLike

    from hamchain.integrators import LeapfrogIntegrator
    from hamchain.states import ChainState
    from hamchain.systems import System
    from hamchain.transitions import IntegrationTransition
    from hamchain.types import (
        AdaptationStatisticFunction,
        AdapterState,
        TransitionStatistics,
    )


def find_reasonable_step_size(
    state: ChainState,
    system: System,
    integrator: LeapfrogIntegrator,
    max_iters: int = 100,
    init_step_size: float = 1.0,
) -> float:
    """Find a reasonable integrator step size by a coarse search.

    Adaptation of Algorithm 4 in Hoffman and Gelman (2014). The step size is
    repeatedly halved or doubled until the absolute change in the Hamiltonian over a
    single step crosses :code:`log(2)`, which corresponds to the minimum of the forward
    and reversed Metropolis acceptance probabilities crossing 0.5. A step size for which
    the integrator step fails is always treated as too big.

    The integrator step size is left set to the returned value.

    Args:
        state: State to perform the single step search from. Not mutated.
        system: Hamiltonian system being integrated.
        integrator: Integrator to find step size for.
        max_iters: Maximum number of halvings or doublings to try.
        init_step_size: Step size to start the search from.

    Returns:
        Found step size.

    Raises:
        AdaptationError: If the Hamiltonian is not finite at the initial state or no
            suitable step size is found within `max_iters` iterations.

    References:
      1. Hoffman, M.D. and Gelman, A. (2014). The No-U-turn sampler: adaptively setting
         path lengths in Hamiltonian Monte Carlo. Journal of Machine Learning Research,
         15(1), pp.1593-1623.
    """
    init_state = state.copy()
    h_init = system.h(init_state)
    if not np.isfinite(h_init):
        msg = "Hamiltonian not finite at initial state."
        raise AdaptationError(msg)
    integrator.reset_jitter()
    integrator.step_size = init_step_size
    delta_h_threshold = log(2)
    step_size_too_big = None
    for _ in range(max_iters):
        try:
            delta_h = abs(h_init - system.h(integrator.step(init_state)))
        except IntegratorError:
            delta_h = np.nan
        if np.isnan(delta_h):
            step_size_too_big = True
        elif step_size_too_big is None:
            step_size_too_big = delta_h > delta_h_threshold
        elif step_size_too_big != (delta_h > delta_h_threshold):
            return integrator.step_size
        if step_size_too_big:
            integrator.step_size /= 2
        else:
            integrator.step_size *= 2
    msg = (
        f"Could not find reasonable initial step size in {max_iters} iterations "
        f"(final step size {integrator.step_size}). A very large final step size may "
        f"indicate that the target distribution is improper while a very small final "
        f"step size may indicate that the density is insufficiently smooth at the "
        f"point initialized at."
    )
    raise AdaptationError(msg)


class Adapter(ABC):
    """Abstract adapter for implementing schemes to adapt transition parameters.

    Adaptation schemes update a collection of adaptation variables (the adapter state)
    after each chain transition based on the sampled chain state and the transition
    statistics. The final adapter state is used to perform a final update of the
    transition parameters.
    """

    @property
    @abstractmethod
    def is_fast(self) -> bool:
        """Whether the adapter needs only local information to adapt (is 'fast')."""

    @abstractmethod
    def initialize(
        self,
        chain_state: ChainState,
        transition: IntegrationTransition,
    ) -> AdapterState:
        """Initialize adapter state prior to starting adaptive transitions.

        Args:
            chain_state: Chain state adaptation starts from. Not mutated.
            transition: Transition being adapted. May be updated in-place.

        Returns:
            Initial adapter state.
        """

    @abstractmethod
    def update(
        self,
        adapt_state: AdapterState,
        chain_state: ChainState,
        trans_stats: TransitionStatistics,
        transition: IntegrationTransition,
    ):
        """Update adapter state after sampling from transition being adapted.

        Args:
            adapt_state: Current adapter state. Updated in-place.
            chain_state: Chain state following the transition. Not mutated.
            trans_stats: Statistics of the transition. Not mutated.
            transition: Transition being adapted. May be updated in-place.
        """

    @abstractmethod
    def finalize(
        self,
        adapt_state: AdapterState,
        chain_state: ChainState,
        transition: IntegrationTransition,
        rng: Generator,
    ):
        """Update transition parameters based on final adapter state.

        Args:
            adapt_state: Final adapter state.
            chain_state: Current chain state. Updated in-place if the new transition
                parameters require resampling any state components.
            transition: Transition being adapted. Updated in-place.
            rng: NumPy random number generator used to resample state components.
        """


def default_adapt_stat_func(stats: TransitionStatistics) -> float:
    """Function to extract default statistic used for step-size adaptation.

    Args:
        stats: Dictionary of transition statistics.

    Returns:
        Acceptance statistic.
    """
    return stats["accept_stat"]


class DualAveragingStepSizeAdapter(Adapter):
    """Dual averaging integrator step size adapter.

    Implementation of the dual averaging step size adaptation algorithm of Hoffman and
    Gelman (2014), a modified version of the stochastic optimisation scheme of Nesterov
    (2009), controlling the :code:`accept_stat` transition statistic to be close to a
    target value.

    References:
      1. Hoffman, M.D. and Gelman, A. (2014). The No-U-turn sampler: adaptively setting
         path lengths in Hamiltonian Monte Carlo. Journal of Machine Learning Research,
         15(1), pp.1593-1623.
      2. Nesterov, Y. (2009). Primal-dual subgradient methods for convex problems.
         Mathematical programming 120(1), pp.221-259.
    """

    is_fast = True

    def __init__(
        self,
        adapt_stat_target: float = 0.8,
        adapt_stat_func: AdaptationStatisticFunction | None = None,
        log_step_size_reg_coefficient: float = 0.05,
        iter_decay_coeff: float = 0.75,
        iter_offset: int = 10,
        max_init_step_size_iters: int = 100,
    ):
        """
        Args:
            adapt_stat_target: Target value for the transition statistic being
                controlled during adaptation.
            adapt_stat_func: Function which given a dictionary of transition statistics
                outputs the value of the statistic to control. Defaults to selecting
                the :code:`accept_stat` value.
            log_step_size_reg_coefficient: Coefficient controlling regularisation of
                the log step size towards :code:`log(10 * init_step_size)`.
            iter_decay_coeff: Exponent of the decay of the weights of updates to the
                smoothed log step size, in the interval (0.5, 1].
            iter_offset: Non-negative offset stabilising early iterations.
            max_init_step_size_iters: Maximum number of iterations of the initial
                step size search.
        """
        if not 0 < adapt_stat_target < 1:
            msg = "adapt_stat_target must be in the interval (0, 1)."
            raise ValueError(msg)
        self.adapt_stat_target = adapt_stat_target
        self.adapt_stat_func = (
            default_adapt_stat_func if adapt_stat_func is None else adapt_stat_func
        )
        self.log_step_size_reg_coefficient = log_step_size_reg_coefficient
        self.iter_decay_coeff = iter_decay_coeff
        self.iter_offset = iter_offset
        self.max_init_step_size_iters = max_init_step_size_iters

    def initialize(
        self,
        chain_state: ChainState,
        transition: IntegrationTransition,
    ) -> AdapterState:
        integrator = transition.integrator
        if integrator.step_size is None:
            find_reasonable_step_size(
                chain_state,
                transition.system,
                integrator,
                self.max_init_step_size_iters,
            )
        return {
            "iter": 0,
            "smoothed_log_step_size": 0.0,
            "adapt_stat_error": 0.0,
            "log_step_size_reg_target": log(10 * integrator.step_size),
        }

    def update(
        self,
        adapt_state: AdapterState,
        chain_state: ChainState,
        trans_stats: TransitionStatistics,
        transition: IntegrationTransition,
    ):
        adapt_state["iter"] += 1
        error_weight = 1 / (self.iter_offset + adapt_state["iter"])
        adapt_state["adapt_stat_error"] *= 1 - error_weight
        adapt_state["adapt_stat_error"] += error_weight * (
            self.adapt_stat_target - self.adapt_stat_func(trans_stats)
        )
        smoothing_weight = (1 / adapt_state["iter"]) ** self.iter_decay_coeff
        log_step_size = adapt_state["log_step_size_reg_target"] - (
            adapt_state["adapt_stat_error"]
            * adapt_state["iter"] ** 0.5
            / self.log_step_size_reg_coefficient
        )
        adapt_state["smoothed_log_step_size"] *= 1 - smoothing_weight
        adapt_state["smoothed_log_step_size"] += smoothing_weight * log_step_size
        transition.integrator.step_size = exp(log_step_size)

    def finalize(
        self,
        adapt_state: AdapterState,
        chain_state: ChainState,
        transition: IntegrationTransition,
        rng: Generator,
    ):
        # Smoothed estimate undefined until at least one update
        if adapt_state["iter"] > 0:
            transition.integrator.step_size = exp(adapt_state["smoothed_log_step_size"])


class OnlineVarianceMetricAdapter(Adapter):
    """Diagonal metric adapter using online variance estimates.

    Uses Welford's algorithm (Welford, 1962) to stably compute an online estimate of the
    sample variances of the position components. The estimates are regularized towards
    a common scalar value, with weight decreasing with the number of samples, following
    Stan (Carpenter et al., 2017). The metric is set to a diagonal matrix with diagonal
    the reciprocal of the regularized variance estimates.

    References:
      1. Welford, B. P. (1962). Note on a method for calculating corrected sums of
         squares and products. Technometrics, 4(3), pp. 419-420.
      2. Carpenter, B., Gelman, A., Hoffman, M.D., Lee, D., Goodrich, B., Betancourt,
         M., Brubaker, M., Guo, J., Li, P. and Riddell, A.  (2017). Stan: A
         probabilistic programming language. Journal of Statistical Software, 76(1).
    """

    is_fast = False

    def __init__(self, reg_iter_offset: int = 5, reg_scale: float = 1e-3):
        """
        Args:
            reg_iter_offset: Iteration offset weighting between the regularisation
                target and the estimate. Zero disables regularisation.
            reg_scale: Positive scalar the variance estimates are regularized towards.
        """
        self.reg_iter_offset = reg_iter_offset
        self.reg_scale = reg_scale

    def initialize(
        self,
        chain_state: ChainState,
        transition: IntegrationTransition,
    ) -> AdapterState:
        return {
            "iter": 0,
            "mean": np.zeros_like(chain_state.pos),
            "sum_diff_sq": np.zeros_like(chain_state.pos),
        }

    def update(
        self,
        adapt_state: AdapterState,
        chain_state: ChainState,
        trans_stats: TransitionStatistics,
        transition: IntegrationTransition,
    ):
        adapt_state["iter"] += 1
        pos_minus_mean = chain_state.pos - adapt_state["mean"]
        adapt_state["mean"] += pos_minus_mean / adapt_state["iter"]
        adapt_state["sum_diff_sq"] += pos_minus_mean * (
            chain_state.pos - adapt_state["mean"]
        )

    def _regularize_var_est(self, var_est: ArrayLike, n_iter: int):
        if self.reg_iter_offset:
            var_est *= n_iter / (self.reg_iter_offset + n_iter)
            var_est += self.reg_scale * (
                self.reg_iter_offset / (self.reg_iter_offset + n_iter)
            )

    def finalize(
        self,
        adapt_state: AdapterState,
        chain_state: ChainState,
        transition: IntegrationTransition,
        rng: Generator,
    ):
        n_iter = adapt_state["iter"]
        if n_iter < 2:
            msg = "At least two chain samples required to compute a variance estimate."
            raise AdaptationError(msg)
        var_est = adapt_state["sum_diff_sq"] / (n_iter - 1)
        self._regularize_var_est(var_est, n_iter)
        transition.system.metric = DiagonalMetric.from_inverse(var_est)
        # Momentum distribution depends on metric so must be resampled
        chain_state.mom = transition.system.sample_momentum(chain_state, rng)


class OnlineCovarianceMetricAdapter(Adapter):
    """Dense metric adapter using online covariance estimates.

    Uses Welford's algorithm (Welford, 1962) to stably compute an online estimate of the
    sample covariance matrix of the position components, regularized towards a scaled
    identity matrix following Stan (Carpenter et al., 2017). The metric is set to the
    inverse of the regularized covariance estimate.

    References:
      1. Welford, B. P. (1962). Note on a method for calculating corrected sums of
         squares and products. Technometrics, 4(3), pp. 419-420.
      2. Carpenter, B., Gelman, A., Hoffman, M.D., Lee, D., Goodrich, B., Betancourt,
         M., Brubaker, M., Guo, J., Li, P. and Riddell, A.  (2017). Stan: A
         probabilistic programming language. Journal of Statistical Software, 76(1).
    """

    is_fast = False

    def __init__(self, reg_iter_offset: int = 5, reg_scale: float = 1e-3):
        """
        Args:
            reg_iter_offset: Iteration offset weighting between the regularisation
                target and the estimate.
            reg_scale: Positive scalar the variance estimates are regularized towards.
        """
        self.reg_iter_offset = reg_iter_offset
        self.reg_scale = reg_scale

    def initialize(
        self,
        chain_state: ChainState,
        transition: IntegrationTransition,
    ) -> AdapterState:
        dim_pos = chain_state.pos.shape[0]
        return {
            "iter": 0,
            "mean": np.zeros(dim_pos),
            "sum_diff_outer": np.zeros((dim_pos, dim_pos)),
        }

    def update(
        self,
        adapt_state: AdapterState,
        chain_state: ChainState,
        trans_stats: TransitionStatistics,
        transition: IntegrationTransition,
    ):
        adapt_state["iter"] += 1
        pos_minus_mean = chain_state.pos - adapt_state["mean"]
        adapt_state["mean"] += pos_minus_mean / adapt_state["iter"]
        adapt_state["sum_diff_outer"] += np.outer(
            chain_state.pos - adapt_state["mean"], pos_minus_mean
        )

    def _regularize_covar_est(self, covar_est: ArrayLike, n_iter: int):
        covar_est *= n_iter / (self.reg_iter_offset + n_iter)
        covar_est[np.diag_indices_from(covar_est)] += self.reg_scale * (
            self.reg_iter_offset / (self.reg_iter_offset + n_iter)
        )

    def finalize(
        self,
        adapt_state: AdapterState,
        chain_state: ChainState,
        transition: IntegrationTransition,
        rng: Generator,
    ):
        n_iter = adapt_state["iter"]
        if n_iter < 2:
            msg = "At least two chain samples required to compute a covariance estimate."
            raise AdaptationError(msg)
        covar_est = adapt_state["sum_diff_outer"] / (n_iter - 1)
        # Symmetrize to remove floating point asymmetry of outer product updates
        covar_est = 0.5 * (covar_est + covar_est.T)
        self._regularize_covar_est(covar_est, n_iter)
        transition.system.metric = DenseMetric.from_inverse(covar_est)
        chain_state.mom = transition.system.sample_momentum(chain_state, rng)


class AdaptationStage(NamedTuple):
    """Stage of an adaptation schedule.

    Slow adapters are only active in slow stages and are finalized at the end of each
    slow stage, while fast adapters are active in all stages.
    """

    n_iter: int
    slow: bool


def windowed_adaptation_schedule(
    n_adapt_iter: int,
    n_init_fast_iter: int = 75,
    n_init_slow_window_iter: int = 25,
    n_final_fast_iter: int = 50,
    slow_window_multiplier: float = 2,
) -> list[AdaptationStage]:
    """Windowed adaptation schedule as used in Stan.

    The adaptive iterations are split into an initial fast stage, a sequence of
    growing memoryless slow windows and a final fast stage. If the three default stage
    lengths do not fit in `n_adapt_iter` they are instead set to approximately 15%, 75%
    and 10% of `n_adapt_iter` respectively, with a single slow window.

    Args:
        n_adapt_iter: Total number of adaptive iterations.
        n_init_fast_iter: Number of iterations in the initial fast stage.
        n_init_slow_window_iter: Number of iterations in the first slow window.
        n_final_fast_iter: Number of iterations in the final fast stage.
        slow_window_multiplier: Factor each slow window grows by relative to the
            previous window.

    Returns:
        List of stages with a positive number of iterations summing to
        `n_adapt_iter`.
    """
    if n_init_fast_iter + n_init_slow_window_iter + n_final_fast_iter > n_adapt_iter:
        n_init_fast_iter = int(0.15 * n_adapt_iter)
        n_final_fast_iter = int(0.1 * n_adapt_iter)
        n_init_slow_window_iter = n_adapt_iter - n_init_fast_iter - n_final_fast_iter
    n_slow_iter = n_adapt_iter - n_init_fast_iter - n_final_fast_iter
    stages = [AdaptationStage(n_init_fast_iter, slow=False)]
    n_window_iter, counter = n_init_slow_window_iter, 0
    while counter < n_slow_iter:
        # Extend window to absorb remainder if next window would not fit
        if counter + int((1 + slow_window_multiplier) * n_window_iter) > n_slow_iter:
            n_window_iter = n_slow_iter - counter
        stages.append(AdaptationStage(n_window_iter, slow=True))
        counter += n_window_iter
        n_window_iter = int(slow_window_multiplier * n_window_iter)
    stages.append(AdaptationStage(n_final_fast_iter, slow=False))
    return [stage for stage in stages if stage.n_iter > 0]
