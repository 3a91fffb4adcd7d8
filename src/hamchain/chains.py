"""Markov chain iterator advancing a single adaptive HMC chain.

A chain keeps a small live buffer of samples. Between steps the buffer holds a single
entry, the current sample. A step appends a proposed entry, fills it from the result
of a trajectory transition simulated by the chain's engine, relabels the previous
current sample as accepted and the proposed sample as current, notifies a callback so
the accepted sample can be harvested and then collapses the buffer back to the new
current sample.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, NamedTuple

import numpy as np

from hamchain.algorithms import HMCAlgorithm
from hamchain.posteriors import eval_log_density, eval_log_density_strict, start_value
from hamchain.samples import Sample, SampleBuffer, SampleID, SampleType
from hamchain.utils import RNGPartition

if TYPE_CHECKING:
    from numpy.typing import ArrayLike

    from hamchain.posteriors import Posterior
    from hamchain.types import SampleCallback, SeedLike


logger = logging.getLogger(__name__)


class ChainInfo(NamedTuple):
    """Identity and tuning status of a chain."""

    id: int
    cycle: int = 0
    tuned: bool = False
    converged: bool = False


class MCMCSpec(NamedTuple):
    """Posterior and algorithm configuration shared read-only by a set of chains.

    Calling a spec with a seed and chain identifier constructs a new chain.
    """

    posterior: Posterior
    algorithm: HMCAlgorithm = HMCAlgorithm()

    def __call__(
        self,
        seed: SeedLike,
        chain_id: int = 0,
        init_position: ArrayLike | None = None,
    ) -> HMCChain:
        return HMCChain(self, seed, chain_id, init_position)


class HMCChain:
    """Iterator over the states of one adaptive Hamiltonian Monte Carlo chain.

    Random numbers used by the chain are drawn from a partition of the seed keyed by
    the chain identifier. Before every step the generator is re-derived from the
    current cycle and step number, so replaying the same `(chain id, cycle, step)`
    sequence from the same seed reproduces the chain exactly, independent of how the
    steps of different chains are interleaved.

    Attributes:
        spec: Posterior and algorithm configuration.
        info: Identity and tuning status of the chain.
        stepno: Number of steps taken in the current cycle.
        nsamples: Number of accepted samples generated in the current cycle.
        samples: Live sample buffer. Its first entry is the current sample.
        engine: HMC engine owned by this chain.
        state: Dynamical state of the engine corresponding to the current sample.
        step_size: Integrator step size resolved at construction.
        last_stats: Statistics of the most recent transition.
        rng: Random number generator for the current step.
        adapting: Whether the engine is still adapting its parameters.
    """

    def __init__(
        self,
        spec: MCMCSpec,
        seed: SeedLike,
        chain_id: int = 0,
        init_position: ArrayLike | None = None,
    ):
        """
        Args:
            spec: Posterior and algorithm configuration.
            seed: Seed to derive the random number streams of the chain from.
            chain_id: Non-negative integer identifier of the chain.
            init_position: Initial parameter vector. If `None` an initial point is
                drawn from a heuristic start value distribution.

        Raises:
            OutOfBoundsError: If `init_position` is outside the posterior bounds or
                has a non-finite log density.
        """
        self.spec = spec
        self.info = ChainInfo(id=chain_id)
        self.stepno = 0
        self.nsamples = 0
        self._rng_partition = RNGPartition(seed).subpartition(chain_id)
        self.reset_rng_counters()
        posterior = spec.posterior
        if init_position is None:
            position = start_value(posterior, self.rng)
        else:
            position = np.array(init_position, dtype=np.float64)
        logd = eval_log_density_strict(posterior, position)
        self.engine, self.state, self.step_size = spec.algorithm.build_engine(
            posterior, position, self.rng
        )
        self.adapting = not self.engine.is_adapted
        self.last_stats = {}
        self.samples = SampleBuffer(posterior.ndim, capacity=2)
        self.samples.append(
            Sample(
                v=position,
                logd=logd,
                weight=1.0,
                id=SampleID(chain_id, 0, 0, SampleType.CURRENT),
            )
        )

    @property
    def current_sample(self) -> Sample:
        """Current sample of the chain."""
        return self.samples[0]

    @property
    def posterior(self) -> Posterior:
        return self.spec.posterior

    @property
    def algorithm(self) -> HMCAlgorithm:
        return self.spec.algorithm

    def reset_rng_counters(self):
        """Re-derive the random number generator from the current cycle and step."""
        self.rng = self._rng_partition.subpartition(
            self.info.cycle, self.stepno
        ).generator()

    def step(self, callback: SampleCallback | None = None):
        """Advance the chain by one trajectory transition.

        If the transition raises, the chain is left as it was before the call. If
        adaptation or the callback raises, the step is completed (the buffer holds
        only the new current sample) before the exception propagates.

        Args:
            callback: Function called as `callback(1, chain)` while both the newly
                accepted sample and the new current sample are in the buffer.
        """
        samples = self.samples
        assert len(samples) == 1
        assert samples.sample_type[0] == SampleType.CURRENT
        self.stepno += 1
        self.reset_rng_counters()
        chain_id, cycle = self.info.id, self.info.cycle
        samples.append(
            Sample(
                v=self.state.pos,
                logd=-np.inf,
                weight=0.0,
                id=SampleID(chain_id, cycle, self.stepno, SampleType.PROPOSED),
            )
        )
        current, proposed = 0, len(samples) - 1
        try:
            state, stats = self.engine.step(self.state, self.rng)
            logd = eval_log_density(self.posterior, state.pos)
        except Exception:
            samples.resize(1)
            self.stepno -= 1
            raise
        self.state, self.last_stats = state, stats
        if not np.isfinite(logd):
            logger.debug(
                f"Invalid log density for proposed sample of chain {chain_id} "
                f"in cycle {cycle} at step {self.stepno}."
            )
        samples.v[proposed] = state.pos
        samples.logd[proposed] = logd
        # Rejection happens within the trajectory sampler so the proposal is
        # always accepted here.
        samples.sample_type[current] = SampleType.ACCEPTED
        samples.sample_type[proposed] = SampleType.CURRENT
        samples.weight[proposed] = 1.0
        self.nsamples += 1
        try:
            if self.adapting:
                self.adapting = not self.engine.adapt(state, stats, self.rng)
            if callback is not None:
                callback(1, self)
        finally:
            samples[current] = samples[proposed]
            samples.resize(1)

    def next_cycle(self):
        """Start a new cycle, resetting the step and sample counts."""
        self.info = self.info._replace(cycle=self.info.cycle + 1)
        self.stepno = 0
        self.nsamples = 0
        self.reset_rng_counters()
        self.samples.resize(1)
        assert self.samples.sample_type[0] == SampleType.CURRENT
        self.samples.weight[0] = 1.0
        self.samples.set_id(
            0, SampleID(self.info.id, self.info.cycle, 0, SampleType.CURRENT)
        )

    def samples_available(self) -> bool:
        """Whether the buffer holds an accepted sample which can be harvested."""
        return self.samples.sample_type[0] == SampleType.ACCEPTED

    def get_samples(
        self, collector: SampleBuffer | list, nonzero_weights: bool = False
    ) -> SampleBuffer | list:
        """Append available samples to a collector.

        Does nothing if no samples are available.

        Args:
            collector: Sample buffer or list to append samples to.
            nonzero_weights: Whether to skip samples with zero weight.

        Returns:
            The collector.
        """
        if not self.samples_available():
            return collector
        sample_type = self.samples.sample_type
        last = len(self.samples) - 1
        assert sample_type[last] == SampleType.CURRENT
        assert np.all(sample_type[:last] > SampleType.INVALID)
        for i in range(last):
            if not nonzero_weights or self.samples.weight[i] > 0:
                collector.append(self.samples[i])
        return collector

    def stop_adaptation(self):
        """Finalize adaptation of the engine, fixing the tuned parameters."""
        if self.adapting:
            self.engine.finalize_adaptation(self.state, self.rng)
            self.adapting = False

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(id={self.info.id}, cycle={self.info.cycle}, "
            f"stepno={self.stepno}, nsamples={self.nsamples})"
        )
