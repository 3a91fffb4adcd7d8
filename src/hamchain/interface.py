"""Higher-level functional interface to hamchain.

Runs a set of adaptive HMC chains through burn-in and then draws a fixed number of
samples per chain. For finer-grained control construct chains with
:py:class:`.chains.MCMCSpec` and drive them with the functions of the
:py:mod:`.burnin` module directly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal, NamedTuple

from hamchain.algorithms import HMCAlgorithm
from hamchain.burnin import (
    BurninStrategy,
    NoOpTuner,
    iterate_chains,
    normalize_callbacks,
    tune_burnin,
)
from hamchain.chains import HMCChain, MCMCSpec
from hamchain.convergence import GelmanRubinConvergence
from hamchain.samples import SampleBuffer

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike

    from hamchain.convergence import ConvergenceTest
    from hamchain.posteriors import Posterior
    from hamchain.types import SampleCallback, SeedLike


class HMCSampleChainsOutputs(NamedTuple):
    """Outputs returned by :py:func:`sample_hmc_chains`.

    Attributes:
        samples: Samples of all chains, ordered by chain identifier then step.
        chains: Chains after sampling.
        burnin_successful: Whether all chains converged during burn-in.
    """

    samples: SampleBuffer
    chains: list[HMCChain]
    burnin_successful: bool


def _collecting_callback(
    buffer: SampleBuffer, user_callback: SampleCallback, nonzero_weights: bool
) -> SampleCallback:
    def callback(level: int, chain: HMCChain):
        if level == 1:
            chain.get_samples(buffer, nonzero_weights=nonzero_weights)
        user_callback(level, chain)

    return callback


def sample_hmc_chains(
    posterior: Posterior,
    n_chain: int,
    n_sample: int,
    seed: SeedLike,
    *,
    algorithm: HMCAlgorithm | None = None,
    init_positions: Sequence[ArrayLike] | None = None,
    burnin: BurninStrategy | None = None,
    convergence_test: ConvergenceTest | None = None,
    strict_mode: bool | Literal["raise"] = False,
    n_workers: int = 1,
    nonzero_weights: bool = True,
    callbacks: SampleCallback | Sequence[SampleCallback] | None = None,
) -> HMCSampleChainsOutputs:
    """Sample adaptive Hamiltonian Monte Carlo chains for a posterior.

    One chain is constructed per chain identifier `0, ..., n_chain - 1`, burned in
    until converged or the burn-in cycle budget is exhausted, and then, with
    adaptation stopped and a fresh cycle started, advanced to draw `n_sample` samples.

    Args:
        posterior: Posterior to sample from.
        n_chain: Number of chains.
        n_sample: Number of samples to draw per chain after burn-in.
        seed: Seed to derive the random number streams of all chains from.
        algorithm: HMC algorithm configuration. Defaults to `HMCAlgorithm()`.
        init_positions: Initial parameter vector for each chain. If `None` initial
            points are drawn from a heuristic start value distribution.
        burnin: Burn-in cycle budget and quotas. Defaults to `BurninStrategy()`.
        convergence_test: Test used to judge burn-in convergence. Defaults to
            `GelmanRubinConvergence()`.
        strict_mode: Severity of a failed burn-in, see
            :py:func:`.burnin.tune_burnin`.
        n_workers: Number of threads to advance chains on.
        nonzero_weights: Whether to skip zero weight samples when collecting.
        callbacks: User callbacks in any form accepted by
            :py:func:`.burnin.normalize_callbacks`, called during both burn-in and
            sampling.

    Returns:
        Named tuple `(samples, chains, burnin_successful)`.
    """
    algorithm = HMCAlgorithm() if algorithm is None else algorithm
    burnin = BurninStrategy() if burnin is None else burnin
    convergence_test = (
        GelmanRubinConvergence() if convergence_test is None else convergence_test
    )
    if init_positions is None:
        init_positions = [None] * n_chain
    elif len(init_positions) != n_chain:
        msg = f"Expected {n_chain} initial positions, got {len(init_positions)}."
        raise ValueError(msg)
    spec = MCMCSpec(posterior, algorithm)
    chains = [spec(seed, c, init_positions[c]) for c in range(n_chain)]
    tuners = [NoOpTuner(chain) for chain in chains]
    user_callbacks = normalize_callbacks(callbacks, n_chain)
    burnin_successful = tune_burnin(
        user_callbacks,
        tuners,
        chains,
        convergence_test,
        burnin,
        strict_mode=strict_mode,
        n_workers=n_workers,
    )
    for chain in chains:
        chain.stop_adaptation()
        chain.next_cycle()
    buffers = [SampleBuffer(posterior.ndim, capacity=n_sample) for _ in chains]
    iterate_chains(
        chains,
        [
            _collecting_callback(buffer, user_callback, nonzero_weights)
            for buffer, user_callback in zip(buffers, user_callbacks)
        ],
        max_nsamples=n_sample,
        max_nsteps=n_sample,
        n_workers=n_workers,
    )
    samples = SampleBuffer(posterior.ndim, capacity=n_chain * n_sample)
    for buffer in buffers:
        samples.extend(buffer)
    return HMCSampleChainsOutputs(samples, chains, burnin_successful)
