"""Markov transition kernels simulating Hamiltonian trajectories."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

from hamchain.errors import HamiltonianDivergenceError, IntegratorError
from hamchain.utils import LogRepFloat

if TYPE_CHECKING:
    from typing import Optional

    from numpy.random import Generator
    from numpy.typing import ArrayLike

    from hamchain.integrators import LeapfrogIntegrator
    from hamchain.states import ChainState
    from hamchain.systems import System
    from hamchain.types import ScalarLike, TerminationCriterion, TransitionStatistics


logger = logging.getLogger(__name__)


def _process_integrator_error(exception: IntegratorError, stats: TransitionStatistics):
    logger.info(f"Terminating trajectory due to error:\n{exception!s}")
    if isinstance(exception, HamiltonianDivergenceError):
        stats["diverging"] = True


def _metropolis_accept_prob(h_init: float, h_final: float) -> float:
    h_diff = h_init - h_final
    # min(0, NaN) == 0 so NaN must be checked for explicitly
    return 0.0 if np.isnan(h_diff) else float(np.exp(min(0, h_diff)))


class Transition(ABC):
    """Base class for Markov transition kernels."""

    @property
    @abstractmethod
    def state_variables(self) -> set[str]:
        """A set of names of state variables accessed by this transition."""

    @abstractmethod
    def sample(
        self,
        state: ChainState,
        rng: Generator,
    ) -> tuple[ChainState, Optional[TransitionStatistics]]:
        """Sample a new chain state from the Markov transition kernel.

        Args:
            state: Current chain state to condition transition kernel on.
            rng: NumPy random number generator.

        Returns:
            Tuple of updated state object and any statistics computed during the
            transition or :code:`None` if no statistics.
        """


class IndependentMomentumTransition(Transition):
    """Independent momentum transition.

    Independently resamples the momentum component of the state from its conditional
    distribution given the remaining state components.
    """

    def __init__(self, system: System):
        """
        Args:
            system: Hamiltonian system defining conditional distribution on momentum.
        """
        self.system = system

    @property
    def state_variables(self) -> set[str]:
        return {"mom"}

    def sample(self, state: ChainState, rng: Generator) -> tuple[ChainState, None]:
        state = state.copy()
        state.mom = self.system.sample_momentum(state, rng)
        return state, None


class IntegrationTransition(Transition):
    """Base class for integration transitions.

    Jointly updates the position and momentum components of the chain state by
    integrating the Hamiltonian dynamics of the system, leaving the canonical
    distribution invariant.
    """

    def __init__(self, system: System, integrator: LeapfrogIntegrator):
        """
        Args:
            system: Hamiltonian system to be simulated.
            integrator: Symplectic integrator for the system.
        """
        self.system = system
        self.integrator = integrator

    @property
    def state_variables(self) -> set[str]:
        return {"pos", "mom", "dir"}


class MetropolisIntegrationTransition(IntegrationTransition):
    """Base for HMC methods using a Metropolis accept step to sample new state.

    A trajectory is simulated from the current state for some number of integrator
    steps and the final state, with the integration direction negated to make the move
    an involution, is accepted or rejected in a Metropolis step. The direction is then
    negated again whatever the outcome, which leaves the extended target invariant as
    it is symmetric in the direction variable.
    """

    def _sample_n_step(
        self,
        state: ChainState,
        n_step: int,
        rng: Generator,
    ) -> tuple[ChainState, TransitionStatistics]:
        h_init = self.system.h(state)
        state_p = state
        integration_error = False
        stats = {
            "diverging": False,
            "step_size": self.integrator.effective_step_size,
        }
        try:
            for s in range(n_step):
                state_p = self.integrator.step(state_p, s, n_step)
        except IntegratorError as e:
            integration_error = True
            stats["n_step"] = s
            _process_integrator_error(e, stats)
        else:
            stats["n_step"] = n_step
            state_p.dir *= -1
        if state_p is not state and not integration_error:
            accept_prob = _metropolis_accept_prob(h_init, self.system.h(state_p))
        else:
            accept_prob = 0.0
        stats["metrop_accept_prob"] = accept_prob
        stats["accept_stat"] = accept_prob
        if not integration_error and rng.uniform() < accept_prob:
            state = state_p
        state.dir *= -1
        return state, stats


class MetropolisStaticIntegrationTransition(MetropolisIntegrationTransition):
    """Integration transition with a fixed number of steps per trajectory.

    This is the original Hybrid Monte Carlo algorithm (Duane et al., 1987).

    References:
      1. Duane, S., Kennedy, A.D., Pendleton, B.J. and Roweth, D. (1987). Hybrid Monte
         Carlo. Physics letters B, 195(2), pp.216-222.
    """

    def __init__(self, system: System, integrator: LeapfrogIntegrator, n_step: int):
        """
        Args:
            system: Hamiltonian system to be simulated.
            integrator: Symplectic integrator for the system.
            n_step: Number of integrator steps to simulate in each transition.
        """
        super().__init__(system, integrator)
        if n_step <= 0:
            msg = "Number of integrator steps must be positive."
            raise ValueError(msg)
        self.n_step = n_step

    def sample(
        self,
        state: ChainState,
        rng: Generator,
    ) -> tuple[ChainState, TransitionStatistics]:
        return self._sample_n_step(state, self.n_step, rng)


class MetropolisFixedLengthIntegrationTransition(MetropolisIntegrationTransition):
    """Integration transition with a fixed total integration time per trajectory.

    The number of integrator steps is recomputed in each transition from the current
    effective step size, so the trajectory length stays fixed while the step size is
    being adapted or jittered.
    """

    def __init__(
        self,
        system: System,
        integrator: LeapfrogIntegrator,
        trajectory_length: float,
    ):
        """
        Args:
            system: Hamiltonian system to be simulated.
            integrator: Symplectic integrator for the system.
            trajectory_length: Total integration time of each trajectory.
        """
        super().__init__(system, integrator)
        if trajectory_length <= 0:
            msg = "Trajectory length must be positive."
            raise ValueError(msg)
        self.trajectory_length = trajectory_length

    def sample(
        self,
        state: ChainState,
        rng: Generator,
    ) -> tuple[ChainState, TransitionStatistics]:
        step_size = self.integrator.effective_step_size
        n_step = max(1, round(self.trajectory_length / step_size)) if step_size else 1
        return self._sample_n_step(state, n_step, rng)


def euclidean_no_u_turn_criterion(
    system: System,
    state_1: ChainState,
    state_2: ChainState,
    _sum_mom: ArrayLike,
) -> bool:
    """No-U-turn termination criterion for Euclidean manifolds.

    Terminates trajectories when the velocity at either terminal state has a negative
    dot product with the displacement between the terminal state positions, so that
    further integration would bring the ends of the trajectory closer together.

    Args:
        system: Hamiltonian system being integrated.
        state_1: First terminal state of trajectory.
        state_2: Second terminal state of trajectory.
        _sum_mom: Sum of momentums of trajectory states (unused).

    Returns:
        Whether termination criterion is satisfied.

    References:
      1. Hoffman, M.D. and Gelman, A. (2014). The No-U-turn sampler: adaptively setting
         path lengths in Hamiltonian Monte Carlo. Journal of Machine Learning Research,
         15(1), pp.1593-1623.
    """
    displacement = state_2.pos - state_1.pos
    return (
        np.sum(system.dh_dmom(state_1) * displacement) < 0
        or np.sum(system.dh_dmom(state_2) * displacement) < 0
    )


def riemannian_no_u_turn_criterion(
    system: System,
    state_1: ChainState,
    state_2: ChainState,
    sum_mom: ArrayLike,
) -> bool:
    """Generalized no-U-turn termination criterion.

    Replaces the displacement between the terminal positions in the classic criterion
    with the sum of momentums along the trajectory (Betancourt, 2013).

    Args:
        system: Hamiltonian system being integrated.
        state_1: First terminal state of trajectory.
        state_2: Second terminal state of trajectory.
        sum_mom: Sum of momentums of trajectory states.

    Returns:
        Whether termination criterion is satisfied.

    References:
      1. Betancourt, M. (2013). Generalizing the no-U-turn sampler to Riemannian
         manifolds. arXiv preprint arXiv:1304.1920.
    """
    return (
        np.sum(system.dh_dmom(state_1) * sum_mom) < 0
        or np.sum(system.dh_dmom(state_2) * sum_mom) < 0
    )


class _SubTree(NamedTuple):
    """Sub-tree of binary trajectory tree for dynamic integration transitions."""

    negative: ChainState
    positive: ChainState
    sum_mom: ArrayLike
    weight: ScalarLike
    depth: int


class DynamicIntegrationTransition(IntegrationTransition):
    """Base class for dynamic integration transitions (no-U-turn samplers).

    A binary tree of states is built by repeatedly doubling the trajectory forwards or
    backwards in time, chosen at random, until a termination criterion is met on the
    tree or one of its subtrees. The next state is selected among the tree states by
    progressive sampling biased towards the most recently added subtree.

    References:
      1. Hoffman, M.D. and Gelman, A., 2014. The No-U-turn sampler: adaptively setting
         path lengths in Hamiltonian Monte Carlo. Journal of Machine Learning Research,
         15(1), pp.1593-1623.
      2. Betancourt, M., 2017. A conceptual introduction to Hamiltonian Monte Carlo.
         arXiv preprint arXiv:1701.02434.
    """

    def __init__(
        self,
        system: System,
        integrator: LeapfrogIntegrator,
        *,
        max_tree_depth: int = 10,
        max_delta_h: float = 1000.0,
        termination_criterion: TerminationCriterion = riemannian_no_u_turn_criterion,
        do_extra_subtree_checks: bool = True,
    ):
        """
        Args:
            system: Hamiltonian system to be simulated.
            integrator: Symplectic integrator for the system.
            max_tree_depth: Maximum depth to expand trajectory binary tree to, with the
                maximum number of integrator steps being :code:`2**max_tree_depth`.
            max_delta_h: Maximum change to tolerate in the Hamiltonian over a
                trajectory before signalling a divergence.
            termination_criterion: Function of the system, the two terminal states of a
                (sub-)tree and the sum of momentums over it, returning whether to stop
                expanding the tree.
            do_extra_subtree_checks: Whether to also check the termination criterion on
                overlapping subtrees, which stops trajectories resonating past a
                U-turn in near harmonic systems.
        """
        super().__init__(system, integrator)
        if max_tree_depth <= 0:
            msg = "max_tree_depth must be positive."
            raise ValueError(msg)
        self.max_tree_depth = max_tree_depth
        self.max_delta_h = max_delta_h
        self.termination_criterion = termination_criterion
        self.do_extra_subtree_checks = do_extra_subtree_checks

    def _termination_criterion(
        self,
        tree: _SubTree,
        neg_subtree: _SubTree,
        pos_subtree: _SubTree,
    ) -> bool:
        if self.termination_criterion(
            self.system, tree.negative, tree.positive, tree.sum_mom
        ):
            return True
        # Subtree checks are redundant for trees of depth 1
        if tree.depth > 1 and self.do_extra_subtree_checks:
            return self.termination_criterion(
                self.system,
                neg_subtree.negative,
                pos_subtree.negative,
                neg_subtree.sum_mom + pos_subtree.negative.mom,
            ) or self.termination_criterion(
                self.system,
                neg_subtree.positive,
                pos_subtree.positive,
                pos_subtree.sum_mom + neg_subtree.positive.mom,
            )
        return False

    def _new_leaf(
        self,
        state: ChainState,
        h: ScalarLike,
        aux_vars: dict[str, ScalarLike],
    ) -> _SubTree:
        return _SubTree(
            negative=state,
            positive=state,
            sum_mom=np.asarray(state.mom),
            weight=self._weight_function(h, aux_vars),
            depth=0,
        )

    @staticmethod
    def _merge_subtrees(neg_subtree: _SubTree, pos_subtree: _SubTree) -> _SubTree:
        if neg_subtree.depth != pos_subtree.depth:
            msg = "Cannot merge subtrees of different depths."
            raise ValueError(msg)
        return _SubTree(
            negative=neg_subtree.negative,
            positive=pos_subtree.positive,
            sum_mom=neg_subtree.sum_mom + pos_subtree.sum_mom,
            weight=neg_subtree.weight + pos_subtree.weight,
            depth=neg_subtree.depth + 1,
        )

    def _init_aux_vars(self, state: ChainState, rng: Generator) -> dict[str, ScalarLike]:
        return {"h_init": self.system.h(state)}

    @abstractmethod
    def _weight_function(self, h: ScalarLike, aux_vars: dict[str, ScalarLike]):
        pass

    @abstractmethod
    def _weight_ratio(self, numerator: ScalarLike, denominator: ScalarLike):
        pass

    @abstractmethod
    def _check_divergence(self, h: ScalarLike, aux_vars: dict[str, ScalarLike]):
        pass

    def _build_tree(
        self,
        depth: int,
        state: ChainState,
        stats: TransitionStatistics,
        rng: Generator,
        aux_vars: dict[str, ScalarLike],
    ) -> tuple[bool, Optional[_SubTree], Optional[ChainState]]:
        if depth == 0:
            try:
                state = self.integrator.step(state)
                h = self.system.h(state)
                h = np.inf if np.isnan(h) else h
                tree = self._new_leaf(state, h, aux_vars)
                stats["sum_metrop_accept_prob"] += _metropolis_accept_prob(
                    aux_vars["h_init"], h
                )
                stats["n_step"] += 1
                self._check_divergence(h, aux_vars)
            except IntegratorError as e:
                _process_integrator_error(e, stats)
                return True, None, None
            return False, tree, state
        terminate, inner_tree, inner_proposal = self._build_tree(
            depth - 1, state, stats, rng, aux_vars
        )
        if terminate:
            return True, None, None
        state = inner_tree.positive if state.dir == 1 else inner_tree.negative
        terminate, outer_tree, outer_proposal = self._build_tree(
            depth - 1, state, stats, rng, aux_vars
        )
        if terminate:
            return True, None, None
        if state.dir == 1:
            neg_subtree, pos_subtree = inner_tree, outer_tree
        else:
            neg_subtree, pos_subtree = outer_tree, inner_tree
        tree = self._merge_subtrees(neg_subtree, pos_subtree)
        accept_outer_prob = self._weight_ratio(outer_tree.weight, tree.weight)
        proposal = outer_proposal if rng.uniform() < accept_outer_prob else inner_proposal
        terminate = self._termination_criterion(tree, neg_subtree, pos_subtree)
        return terminate, tree, proposal

    def sample(
        self,
        state: ChainState,
        rng: Generator,
    ) -> tuple[ChainState, TransitionStatistics]:
        stats = {
            "n_step": 0,
            "sum_metrop_accept_prob": 0.0,
            "reject_prob": 1.0,
            "diverging": False,
            "step_size": self.integrator.effective_step_size,
        }
        aux_vars = self._init_aux_vars(state, rng)
        tree = self._new_leaf(state, aux_vars["h_init"], aux_vars)
        next_state = state
        for depth in range(self.max_tree_depth):
            direction = 2 * (rng.uniform() < 0.5) - 1
            state = tree.positive if direction == 1 else tree.negative
            state.dir = direction
            terminate, new_tree, new_proposal = self._build_tree(
                depth, state, stats, rng, aux_vars
            )
            if terminate:
                break
            # Bias selection towards the newly built subtree
            accept_proposal_prob = self._weight_ratio(new_tree.weight, tree.weight)
            if rng.uniform() < accept_proposal_prob:
                next_state = new_proposal
            stats["reject_prob"] *= 1.0 - accept_proposal_prob
            if direction == 1:
                neg_subtree, pos_subtree = tree, new_tree
            else:
                neg_subtree, pos_subtree = new_tree, tree
            tree = self._merge_subtrees(neg_subtree, pos_subtree)
            if self._termination_criterion(tree, neg_subtree, pos_subtree):
                break
        sum_accept_prob = stats.pop("sum_metrop_accept_prob")
        stats["av_metrop_accept_prob"] = (
            sum_accept_prob / stats["n_step"] if stats["n_step"] > 0 else 0.0
        )
        stats["accept_stat"] = 0.0 if stats["diverging"] else stats["av_metrop_accept_prob"]
        stats["tree_depth"] = depth
        return next_state, stats


class MultinomialDynamicIntegrationTransition(DynamicIntegrationTransition):
    """Dynamic integration transition with multinomial sampling of new state.

    Candidate states are weighted by their probability density under the canonical
    distribution (Betancourt, 2017).

    References:
      1. Betancourt, M. (2017). A conceptual introduction to Hamiltonian Monte Carlo.
         arXiv preprint arXiv:1701.02434.
    """

    def _weight_function(self, h: ScalarLike, aux_vars: dict[str, ScalarLike]):
        return LogRepFloat(log_val=-h)

    def _weight_ratio(self, numerator: ScalarLike, denominator: ScalarLike):
        return min((numerator / denominator).val, 1.0)

    def _check_divergence(self, h: ScalarLike, aux_vars: dict[str, ScalarLike]):
        if h - aux_vars["h_init"] > self.max_delta_h:
            msg = f"delta_h = {h - aux_vars['h_init']}"
            raise HamiltonianDivergenceError(msg)


class SliceDynamicIntegrationTransition(DynamicIntegrationTransition):
    """Dynamic integration transition with slice sampling of new state.

    Candidate states are weighted uniformly over those inside a slice drawn below the
    density of the initial state. With the classic no-U-turn criterion this is the
    'efficient No-U-Turn Sampler' of Hoffman and Gelman (2014, Algorithm 3).

    References:
      1. Hoffman, M.D. and Gelman, A. (2014). The No-U-turn sampler: adaptively setting
         path lengths in Hamiltonian Monte Carlo. Journal of Machine Learning Research,
         15(1), pp.1593-1623.
    """

    def _init_aux_vars(self, state: ChainState, rng: Generator) -> dict[str, ScalarLike]:
        aux_vars = super()._init_aux_vars(state, rng)
        aux_vars["log_u"] = np.log(rng.uniform()) - aux_vars["h_init"]
        return aux_vars

    def _weight_function(self, h: ScalarLike, aux_vars: dict[str, ScalarLike]):
        return (aux_vars["log_u"] <= -h) * 1

    def _weight_ratio(self, numerator: ScalarLike, denominator: ScalarLike):
        return min(numerator / denominator, 1) if denominator > 0 else min(numerator, 1)

    def _check_divergence(self, h: ScalarLike, aux_vars: dict[str, ScalarLike]):
        if h + aux_vars["log_u"] > self.max_delta_h:
            msg = f"delta_h = {h + aux_vars['log_u']}"
            raise HamiltonianDivergenceError(msg)
