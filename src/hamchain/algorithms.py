"""Immutable configuration of HMC algorithms and construction of engines from it.

Configuration objects are named tuples and are never mutated. Building an engine for a
chain resolves any unset step size by a search and stores the result only in the
integrator of that chain's engine.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, NamedTuple, Union

import numpy as np

from hamchain import adapters as _adapters
from hamchain.engines import NativeHMCEngine
from hamchain.integrators import (
    JitteredLeapfrogIntegrator,
    LeapfrogIntegrator,
    TemperedLeapfrogIntegrator,
)
from hamchain.metrics import DenseMetric, DiagonalMetric, IdentityMetric
from hamchain.systems import EuclideanMetricSystem
from hamchain.transitions import (
    MetropolisFixedLengthIntegrationTransition,
    MetropolisStaticIntegrationTransition,
    MultinomialDynamicIntegrationTransition,
    SliceDynamicIntegrationTransition,
    euclidean_no_u_turn_criterion,
    riemannian_no_u_turn_criterion,
)

if TYPE_CHECKING:
    from numpy.random import Generator
    from numpy.typing import ArrayLike

    from hamchain.adapters import AdaptationStage, Adapter
    from hamchain.metrics import EuclideanMetric
    from hamchain.posteriors import Posterior
    from hamchain.states import ChainState
    from hamchain.systems import System
    from hamchain.transitions import IntegrationTransition


METRICS = ("unit", "diagonal", "dense")


def _initial_metric(metric: str, ndim: int) -> EuclideanMetric:
    if metric == "unit":
        return IdentityMetric()
    if metric == "diagonal":
        return DiagonalMetric(np.ones(ndim))
    if metric == "dense":
        return DenseMetric(np.identity(ndim))
    msg = f"Unknown metric {metric!r}: valid options are {METRICS}."
    raise ValueError(msg)


def _metric_adapter(metric: str) -> list[Adapter]:
    if metric == "diagonal":
        return [_adapters.OnlineVarianceMetricAdapter()]
    if metric == "dense":
        return [_adapters.OnlineCovarianceMetricAdapter()]
    return []


def _single_stage(n_adapt_iter: int, *, slow: bool) -> list[AdaptationStage]:
    if n_adapt_iter <= 0:
        return []
    return [_adapters.AdaptationStage(n_adapt_iter, slow)]


class Leapfrog(NamedTuple):
    """Leapfrog integrator. A step size of zero requests a step size search."""

    step_size: float = 0.0

    def build(self, system: System) -> LeapfrogIntegrator:
        return LeapfrogIntegrator(system, self.step_size or None)


class JitteredLeapfrog(NamedTuple):
    """Leapfrog integrator with step size jittered in each transition."""

    step_size: float = 0.0
    jitter_rate: float = 1.0

    def build(self, system: System) -> JitteredLeapfrogIntegrator:
        return JitteredLeapfrogIntegrator(
            system, self.step_size or None, self.jitter_rate
        )


class TemperedLeapfrog(NamedTuple):
    """Leapfrog integrator with momentum tempered along each trajectory."""

    step_size: float = 0.0
    tempering_rate: float = 1.05

    def build(self, system: System) -> TemperedLeapfrogIntegrator:
        return TemperedLeapfrogIntegrator(
            system, self.step_size or None, self.tempering_rate
        )


class FixedStepNumber(NamedTuple):
    """Metropolis accepted trajectories of a fixed number of integrator steps."""

    n_step: int = 10

    def build(
        self, system: System, integrator: LeapfrogIntegrator
    ) -> IntegrationTransition:
        return MetropolisStaticIntegrationTransition(system, integrator, self.n_step)


class FixedTrajectoryLength(NamedTuple):
    """Metropolis accepted trajectories of a fixed total integration time."""

    trajectory_length: float = 2.0

    def build(
        self, system: System, integrator: LeapfrogIntegrator
    ) -> IntegrationTransition:
        return MetropolisFixedLengthIntegrationTransition(
            system, integrator, self.trajectory_length
        )


class NUTS(NamedTuple):
    """No-U-turn dynamic trajectories.

    `sampling` is one of `"multinomial"` or `"slice"` and `termination` one of
    `"classic"` or `"generalised"`.
    """

    sampling: str = "multinomial"
    termination: str = "classic"
    max_tree_depth: int = 10
    max_delta_h: float = 1000.0

    def build(
        self, system: System, integrator: LeapfrogIntegrator
    ) -> IntegrationTransition:
        transition_classes = {
            "multinomial": MultinomialDynamicIntegrationTransition,
            "slice": SliceDynamicIntegrationTransition,
        }
        criteria = {
            "generalised": riemannian_no_u_turn_criterion,
            "classic": euclidean_no_u_turn_criterion,
        }
        if self.sampling not in transition_classes:
            msg = f"Unknown trajectory sampling scheme {self.sampling!r}."
            raise ValueError(msg)
        if self.termination not in criteria:
            msg = f"Unknown trajectory termination criterion {self.termination!r}."
            raise ValueError(msg)
        return transition_classes[self.sampling](
            system,
            integrator,
            max_tree_depth=self.max_tree_depth,
            max_delta_h=self.max_delta_h,
            termination_criterion=criteria[self.termination],
        )


class NoAdaptor(NamedTuple):
    """No adaptation of the step size or metric."""

    def build(self, metric: str) -> tuple[list[Adapter], list[AdaptationStage]]:
        return [], []


class MassMatrixAdaptor(NamedTuple):
    """Adapt only the metric, estimated from all adaptive iterations."""

    n_adapt_iter: int = 1000

    def build(self, metric: str) -> tuple[list[Adapter], list[AdaptationStage]]:
        return _metric_adapter(metric), _single_stage(self.n_adapt_iter, slow=True)


class StepSizeAdaptor(NamedTuple):
    """Adapt only the step size by dual averaging."""

    target_accept: float = 0.8
    n_adapt_iter: int = 1000

    def build(self, metric: str) -> tuple[list[Adapter], list[AdaptationStage]]:
        return (
            [_adapters.DualAveragingStepSizeAdapter(self.target_accept)],
            _single_stage(self.n_adapt_iter, slow=False),
        )


class NaiveHMCAdaptor(NamedTuple):
    """Adapt the step size and metric jointly over all adaptive iterations."""

    target_accept: float = 0.8
    n_adapt_iter: int = 1000

    def build(self, metric: str) -> tuple[list[Adapter], list[AdaptationStage]]:
        adapters = [_adapters.DualAveragingStepSizeAdapter(self.target_accept)]
        return (
            adapters + _metric_adapter(metric),
            _single_stage(self.n_adapt_iter, slow=True),
        )


class StanHMCAdaptor(NamedTuple):
    """Adapt the step size and metric with Stan's windowed scheme."""

    target_accept: float = 0.8
    n_adapt_iter: int = 1000
    init_buffer: int = 75
    term_buffer: int = 50
    base_window: int = 25

    def build(self, metric: str) -> tuple[list[Adapter], list[AdaptationStage]]:
        adapters = [_adapters.DualAveragingStepSizeAdapter(self.target_accept)]
        schedule = _adapters.windowed_adaptation_schedule(
            self.n_adapt_iter,
            n_init_fast_iter=self.init_buffer,
            n_init_slow_window_iter=self.base_window,
            n_final_fast_iter=self.term_buffer,
        )
        return adapters + _metric_adapter(metric), schedule


IntegratorConfig = Union[Leapfrog, JitteredLeapfrog, TemperedLeapfrog]
ProposalConfig = Union[FixedStepNumber, FixedTrajectoryLength, NUTS]
AdaptorConfig = Union[
    NoAdaptor, MassMatrixAdaptor, StepSizeAdaptor, NaiveHMCAdaptor, StanHMCAdaptor
]


class HMCAlgorithm(NamedTuple):
    """Configuration of an adaptive HMC algorithm.

    Defaults to a diagonal metric, a leapfrog integrator with searched initial step
    size, multinomial no-U-turn trajectories with the classic termination criterion
    and Stan's windowed adaptation of step size and metric.
    """

    metric: str = "diagonal"
    integrator: IntegratorConfig = Leapfrog()
    proposal: ProposalConfig = NUTS()
    adaptor: AdaptorConfig = StanHMCAdaptor()

    def build_engine(
        self, posterior: Posterior, position: ArrayLike, rng: Generator
    ) -> tuple[NativeHMCEngine, ChainState, float]:
        """Build the engine of one chain.

        Args:
            posterior: Posterior to sample from.
            position: Initial position with finite log density.
            rng: NumPy random number generator used for the initial momentum.

        Returns:
            Tuple of engine, initial dynamical state and resolved step size.
        """
        system = EuclideanMetricSystem(
            posterior, _initial_metric(self.metric, posterior.ndim)
        )
        integrator = self.integrator.build(system)
        transition = self.proposal.build(system, integrator)
        adapters, schedule = self.adaptor.build(self.metric)
        engine = NativeHMCEngine(system, integrator, transition, adapters, schedule)
        state = engine.init_state(position, rng)
        return engine, state, engine.step_size
