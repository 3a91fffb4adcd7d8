"""HMC engines producing trajectory transitions and adapting their parameters."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import numpy as np

from hamchain.adapters import find_reasonable_step_size
from hamchain.states import ChainState
from hamchain.transitions import IndependentMomentumTransition

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.random import Generator
    from numpy.typing import ArrayLike

    from hamchain.adapters import AdaptationStage, Adapter
    from hamchain.integrators import LeapfrogIntegrator
    from hamchain.systems import System
    from hamchain.transitions import IntegrationTransition
    from hamchain.types import TransitionStatistics


logger = logging.getLogger(__name__)


class HMCEngine(ABC):
    """Interface a chain iterator uses to advance and tune a Hamiltonian chain.

    An engine owns the integrator, trajectory proposal and adaptor state of exactly one
    chain. The dynamical state it advances is opaque to the chain iterator other than
    its :code:`pos` attribute.
    """

    @abstractmethod
    def init_state(self, position: ArrayLike, rng: Generator) -> ChainState:
        """Create the initial dynamical state and resolve any unset step size.

        Args:
            position: Initial position, assumed to have finite log density.
            rng: NumPy random number generator.

        Returns:
            Initial dynamical state.
        """

    @abstractmethod
    def step(
        self, state: ChainState, rng: Generator
    ) -> tuple[ChainState, TransitionStatistics]:
        """Simulate one trajectory transition.

        Args:
            state: Current dynamical state. Not mutated.
            rng: NumPy random number generator.

        Returns:
            Tuple of new dynamical state and transition statistics, the latter
            including at least an :code:`accept_stat` entry.
        """

    @abstractmethod
    def adapt(
        self, state: ChainState, stats: TransitionStatistics, rng: Generator
    ) -> bool:
        """Update adaptor state, and possibly the metric and step size, after a step.

        Args:
            state: Dynamical state following the transition. Its momentum may be
                resampled in-place if the metric changes.
            stats: Statistics of the transition.
            rng: NumPy random number generator.

        Returns:
            Whether adaptation has completed.
        """

    @abstractmethod
    def find_step_size(self, state: ChainState) -> float:
        """Search for a reasonable step size from a state.

        Args:
            state: Dynamical state to search from. Not mutated.

        Returns:
            Positive step size, also set as the engine step size.
        """

    @abstractmethod
    def finalize_adaptation(self, state: ChainState, rng: Generator):
        """Stop adapting and fix the tuned parameters to their final estimates.

        Args:
            state: Current dynamical state. May be updated in-place.
            rng: NumPy random number generator.
        """

    @property
    @abstractmethod
    def step_size(self) -> float:
        """Nominal integrator step size."""

    @property
    @abstractmethod
    def is_adapted(self) -> bool:
        """Whether adaptation has completed (or was never requested)."""


class NativeHMCEngine(HMCEngine):
    """HMC engine composing a system, integrator, transitions and adapters.

    Each step independently resamples the momentum and then simulates a trajectory with
    the integration transition. Adapters are updated following a staged schedule: fast
    adapters (e.g. step size) are active in all stages while slow adapters (e.g. the
    metric) are only active in slow stages. At the end of each slow stage the slow
    adapters are finalized and, if further stages follow, the step size is searched for
    again and all adapters restarted. At the end of the schedule the fast adapters are
    finalized and adaptation stops.
    """

    def __init__(
        self,
        system: System,
        integrator: LeapfrogIntegrator,
        transition: IntegrationTransition,
        adapters: Sequence[Adapter] = (),
        schedule: Sequence[AdaptationStage] = (),
    ):
        """
        Args:
            system: Hamiltonian system to simulate.
            integrator: Integrator for the system, with step size `None` if it should
                be found by a search when the initial state is created.
            transition: Integration transition generating trajectories.
            adapters: Adapters tuning the transition parameters.
            schedule: Stages of the adaptation schedule. No adaptation is performed if
                empty.
        """
        self.system = system
        self.integrator = integrator
        self.transition = transition
        self.momentum_transition = IndependentMomentumTransition(system)
        self.adapters = list(adapters)
        self.schedule = list(schedule) if self.adapters else []
        self._adapt_states = None
        self._stage_index = 0
        self._stage_iter = 0
        self._adapting = False

    @property
    def step_size(self) -> float:
        return self.integrator.step_size

    @property
    def is_adapted(self) -> bool:
        return not self._adapting

    def init_state(self, position: ArrayLike, rng: Generator) -> ChainState:
        state = ChainState(pos=np.array(position, dtype=np.float64), mom=None, dir=1)
        state.mom = self.system.sample_momentum(state, rng)
        if self.integrator.step_size is None:
            self.find_step_size(state)
            logger.debug(f"Initial step size set to {self.integrator.step_size}")
        self._adapting = len(self.schedule) > 0
        if self._adapting:
            self._initialize_adapters(state)
        return state

    def _initialize_adapters(self, state: ChainState):
        self._adapt_states = [
            adapter.initialize(state, self.transition) for adapter in self.adapters
        ]

    def _finalize_adapters(self, state: ChainState, rng: Generator, *, fast: bool):
        for adapter, adapt_state in zip(self.adapters, self._adapt_states):
            if adapter.is_fast == fast:
                adapter.finalize(adapt_state, state, self.transition, rng)

    def step(
        self, state: ChainState, rng: Generator
    ) -> tuple[ChainState, TransitionStatistics]:
        self.integrator.jitter(rng)
        state, _ = self.momentum_transition.sample(state, rng)
        return self.transition.sample(state, rng)

    def adapt(
        self, state: ChainState, stats: TransitionStatistics, rng: Generator
    ) -> bool:
        if not self._adapting:
            return True
        stage = self.schedule[self._stage_index]
        for adapter, adapt_state in zip(self.adapters, self._adapt_states):
            if stage.slow or adapter.is_fast:
                adapter.update(adapt_state, state, stats, self.transition)
        self._stage_iter += 1
        if self._stage_iter < stage.n_iter:
            return False
        self._stage_index += 1
        self._stage_iter = 0
        is_last_stage = self._stage_index == len(self.schedule)
        if stage.slow:
            self._finalize_adapters(state, rng, fast=False)
            if not is_last_stage:
                self.find_step_size(state)
                self._initialize_adapters(state)
        if is_last_stage:
            self._finalize_adapters(state, rng, fast=True)
            self._adapting = False
        return not self._adapting

    def find_step_size(self, state: ChainState) -> float:
        return find_reasonable_step_size(state, self.system, self.integrator)

    def finalize_adaptation(self, state: ChainState, rng: Generator):
        if not self._adapting:
            return
        stage = self.schedule[self._stage_index]
        # Slow adapters need at least two samples for a variance estimate
        if stage.slow and self._stage_iter >= 2:
            self._finalize_adapters(state, rng, fast=False)
        self._finalize_adapters(state, rng, fast=True)
        self._adapting = False
