"""Convergence tests used to decide when burn-in of a set of chains is complete."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from hamchain.chains import HMCChain
    from hamchain.samples import SampleBuffer


logger = logging.getLogger(__name__)


class ConvergenceTest(ABC):
    """Test of whether a set of chains is tuned and has converged."""

    @abstractmethod
    def __call__(
        self, chains: Sequence[HMCChain], stats: Sequence[SampleBuffer]
    ) -> list[tuple[bool, bool]]:
        """Test a set of chains.

        Args:
            chains: Chains to test.
            stats: Tuning statistics (samples of the latest cycle) of each chain.

        Returns:
            List of `(tuned, converged)` flag pairs, one per chain.
        """


class AlwaysConverged(ConvergenceTest):
    """Reports all chains as tuned and converged."""

    def __call__(self, chains, stats):
        return [(True, True) for _ in chains]


class NeverConverged(ConvergenceTest):
    """Reports all chains as neither tuned nor converged."""

    def __call__(self, chains, stats):
        return [(False, False) for _ in chains]


def split_potential_scale_reduction(chain_values: Sequence[np.ndarray]) -> np.ndarray:
    """Compute the split potential scale reduction factor (R-hat) of a set of chains.

    Each chain is truncated to the length of the shortest chain and split in two
    halves, which are then treated as separate chains in the Gelman-Rubin diagnostic.

    Args:
        chain_values: Sequence of arrays of shape `(n_sample, n_dim)`, one per chain.

    Returns:
        Array of shape `(n_dim,)` of R-hat values. Values are `inf` if fewer than
        two samples per split chain are available and `nan` where all within chain
        variances are zero.
    """
    n_dim = np.shape(chain_values[0])[1]
    n_half = min(len(values) for values in chain_values) // 2
    if n_half < 2:
        return np.full(n_dim, np.inf)
    split_chains = np.stack(
        [
            half
            for values in chain_values
            for half in (values[:n_half], values[n_half : 2 * n_half])
        ]
    )
    chain_means = split_chains.mean(1)
    within_var = split_chains.var(1, ddof=1).mean(0)
    between_var = n_half * chain_means.var(0, ddof=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        pooled_var = (n_half - 1) / n_half * within_var + between_var / n_half
        return np.sqrt(pooled_var / within_var)


class GelmanRubinConvergence(ConvergenceTest):
    """Convergence test based on the split potential scale reduction factor.

    All chains are judged converged when the maximum split R-hat over all parameters
    is below a threshold and every chain is tuned. A chain is tuned when its engine
    has completed (or never had any) adaptation.
    """

    def __init__(self, threshold: float = 1.1):
        """
        Args:
            threshold: Value the maximum R-hat must be below for convergence.
        """
        self.threshold = threshold

    def __call__(self, chains, stats):
        if len(chains) == 0:
            return []
        tuned = [chain.engine.is_adapted for chain in chains]
        max_r_hat = np.max(split_potential_scale_reduction([s.v for s in stats]))
        logger.debug(f"Maximum split R-hat over {len(chains)} chains: {max_r_hat}")
        converged = bool(max_r_hat < self.threshold) and all(tuned)
        return [(t, converged) for t in tuned]

    def __repr__(self) -> str:
        return f"GelmanRubinConvergence(threshold={self.threshold})"


def check_convergence(
    test: ConvergenceTest,
    chains: Sequence[HMCChain],
    stats: Sequence[SampleBuffer],
) -> list[tuple[bool, bool]]:
    """Apply a convergence test, updating the `info` of each chain.

    Args:
        test: Convergence test to apply.
        chains: Chains to test.
        stats: Tuning statistics of each chain.

    Returns:
        List of `(tuned, converged)` flag pairs, one per chain.
    """
    results = test(chains, stats)
    if len(results) != len(chains):
        msg = f"Convergence test returned {len(results)} results for {len(chains)} chains."
        raise ValueError(msg)
    for chain, (tuned, converged) in zip(chains, results):
        chain.info = chain.info._replace(tuned=bool(tuned), converged=bool(converged))
    return results
