"""Tuning and burn-in control loop for sets of chains."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Literal, NamedTuple

from hamchain.convergence import check_convergence
from hamchain.errors import BurninError
from hamchain.samples import SampleBuffer
from hamchain.utils import thread_pool

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from hamchain.chains import HMCChain
    from hamchain.convergence import ConvergenceTest
    from hamchain.types import SampleCallback


logger = logging.getLogger(__name__)


class BurninStrategy(NamedTuple):
    """Quotas bounding the burn-in of a set of chains.

    Attributes:
        max_ncycles: Maximum number of tuning cycles.
        max_nsamples_per_cycle: Maximum number of samples per chain per cycle.
        max_nsteps_per_cycle: Maximum number of steps per chain per cycle.
        max_time_per_cycle: Maximum wall-clock time in seconds per chain per cycle.
    """

    max_ncycles: int = 30
    max_nsamples_per_cycle: int = 1000
    max_nsteps_per_cycle: int = 10000
    max_time_per_cycle: float = float("inf")


class NoOpTuner:
    """Tuner which only collects the samples of a chain as tuning statistics.

    The tuning itself is performed by the adapters of the chain's engine.
    """

    def __init__(self, chain: HMCChain):
        self.chain = chain
        self.stats = SampleBuffer(chain.posterior.ndim)

    def callback(self, level: int, chain: HMCChain):
        if level == 1:
            chain.get_samples(self.stats, nonzero_weights=True)

    def reset(self):
        self.stats.clear()

    def __repr__(self) -> str:
        return f"NoOpTuner(chain_id={self.chain.info.id}, n_stats={len(self.stats)})"


def _no_op_callback(level: int, obj: object):
    pass


def normalize_callbacks(
    callbacks: SampleCallback | Sequence[SampleCallback] | None, n: int
) -> list[SampleCallback]:
    """Normalize callbacks to a list of one callback per chain.

    Args:
        callbacks: `None`, a single callable shared by all chains or a sequence of
            one callable per chain.
        n: Number of chains.

    Returns:
        List of `n` callables.
    """
    if callbacks is None:
        return [_no_op_callback] * n
    if callable(callbacks):
        return [callbacks] * n
    callbacks = [_no_op_callback if c is None else c for c in callbacks]
    if len(callbacks) != n:
        msg = f"Expected {n} callbacks, got {len(callbacks)}."
        raise ValueError(msg)
    return callbacks


def iterate_chain(
    chain: HMCChain,
    callback: SampleCallback | None = None,
    max_nsamples: int = 1000,
    max_nsteps: int = 10000,
    max_time: float = float("inf"),
) -> HMCChain:
    """Step a chain until any of the sample, step or time quotas is exhausted.

    Quotas are checked between steps, so a step which has started always completes.

    Args:
        chain: Chain to advance.
        callback: Function passed to each :py:meth:`HMCChain.step` call.
        max_nsamples: Maximum number of samples to generate.
        max_nsteps: Maximum number of steps to take.
        max_time: Maximum wall-clock time in seconds.

    Returns:
        The advanced chain.
    """
    start_time = time.monotonic()
    start_nsteps, start_nsamples = chain.stepno, chain.nsamples
    while (
        chain.nsamples - start_nsamples < max_nsamples
        and chain.stepno - start_nsteps < max_nsteps
        and time.monotonic() - start_time < max_time
    ):
        chain.step(callback)
    return chain


def iterate_chains(
    chains: Sequence[HMCChain],
    callbacks: SampleCallback | Sequence[SampleCallback] | None = None,
    max_nsamples: int = 1000,
    max_nsteps: int = 10000,
    max_time: float = float("inf"),
    n_workers: int = 1,
) -> list[HMCChain]:
    """Advance a set of chains independently under the same quotas.

    Chains share no mutable state so may be advanced concurrently. As each chain
    derives its random numbers from its own identifier, cycle and step number, the
    result does not depend on `n_workers`.

    Args:
        chains: Chains to advance.
        callbacks: Callbacks in any form accepted by :py:func:`normalize_callbacks`.
        max_nsamples: Maximum number of samples per chain.
        max_nsteps: Maximum number of steps per chain.
        max_time: Maximum wall-clock time in seconds per chain.
        n_workers: Number of threads to advance chains on. Chains are advanced
            sequentially in the calling thread if one.

    Returns:
        List of the advanced chains.
    """
    callbacks = normalize_callbacks(callbacks, len(chains))
    args = [
        (chain, callback, max_nsamples, max_nsteps, max_time)
        for chain, callback in zip(chains, callbacks)
    ]
    if n_workers > 1 and len(chains) > 1:
        with thread_pool(min(n_workers, len(chains))) as pool:
            return pool.starmap(iterate_chain, args)
    return [iterate_chain(*chain_args) for chain_args in args]


def _tuning_callback(tuner: NoOpTuner, user_callback: SampleCallback) -> Callable:
    def callback(level: int, chain: HMCChain):
        tuner.callback(level, chain)
        user_callback(level, chain)

    return callback


def run_tuning_cycle(
    callbacks: SampleCallback | Sequence[SampleCallback] | None,
    tuners: Sequence[NoOpTuner],
    chains: Sequence[HMCChain],
    strategy: BurninStrategy = BurninStrategy(),
    n_workers: int = 1,
):
    """Run one tuning cycle, collecting tuning statistics alongside user callbacks.

    Args:
        callbacks: Callbacks in any form accepted by :py:func:`normalize_callbacks`.
        tuners: One tuner per chain.
        chains: Chains to advance.
        strategy: Quotas for the cycle.
        n_workers: Number of threads to advance chains on.
    """
    user_callbacks = normalize_callbacks(callbacks, len(chains))
    combined_callbacks = [
        _tuning_callback(tuner, user_callback)
        for tuner, user_callback in zip(tuners, user_callbacks)
    ]
    iterate_chains(
        chains,
        combined_callbacks,
        max_nsamples=strategy.max_nsamples_per_cycle,
        max_nsteps=strategy.max_nsteps_per_cycle,
        max_time=strategy.max_time_per_cycle,
        n_workers=n_workers,
    )


def tune_burnin(
    callbacks: SampleCallback | Sequence[SampleCallback] | None,
    tuners: Sequence[NoOpTuner],
    chains: Sequence[HMCChain],
    convergence_test: ConvergenceTest,
    strategy: BurninStrategy = BurninStrategy(),
    strict_mode: bool | Literal["raise"] = False,
    n_workers: int = 1,
) -> bool:
    """Run tuning cycles until all chains have converged or the cycle budget is used.

    Each cycle after the first starts a new cycle of every chain and clears the
    tuners' statistics, so convergence is judged on the samples of the latest cycle.
    After every cycle the convergence test updates the `tuned` and `converged` flags
    of each chain's `info` and each user callback is called with its chain's tuner.

    Args:
        callbacks: Callbacks in any form accepted by :py:func:`normalize_callbacks`.
        tuners: One tuner per chain.
        chains: Chains to burn in.
        convergence_test: Test returning per-chain tuned and converged flags.
        strategy: Cycle budget and per-cycle quotas.
        strict_mode: If `False` a failed burn-in is logged as a warning, if `True` as
            an error. If `"raise"` a failed burn-in is logged as an error and a
            :py:exc:`BurninError` raised.
        n_workers: Number of threads to advance chains on.

    Returns:
        Whether all chains converged.

    Raises:
        BurninError: If `strict_mode == "raise"` and burn-in failed.
    """
    n_chain = len(chains)
    logger.info(f"Begin burn-in of {len(tuners)} MCMC chain(s).")
    user_callbacks = normalize_callbacks(callbacks, n_chain)
    cycles = 0
    successful = False
    while not successful and cycles < strategy.max_ncycles:
        if cycles > 0:
            for chain, tuner in zip(chains, tuners):
                chain.next_cycle()
                tuner.reset()
        cycles += 1
        run_tuning_cycle(user_callbacks, tuners, chains, strategy, n_workers)
        check_convergence(convergence_test, chains, [tuner.stats for tuner in tuners])
        n_tuned = sum(chain.info.tuned for chain in chains)
        n_converged = sum(chain.info.converged for chain in chains)
        successful = n_converged == n_chain
        for user_callback, tuner in zip(user_callbacks, tuners):
            user_callback(1, tuner)
        logger.info(
            f"MCMC tuning cycle {cycles} finished, {n_chain} chains, "
            f"{n_tuned} tuned, {n_converged} converged."
        )
    if successful:
        logger.info(
            f"MCMC tuning of {n_chain} chains successful after {cycles} cycle(s)."
        )
        return True
    msg = f"MCMC tuning of {n_chain} chains aborted after {cycles} cycle(s)."
    if strict_mode:
        logger.error(msg)
        if strict_mode == "raise":
            raise BurninError(msg)
    else:
        logger.warning(msg)
    return False
