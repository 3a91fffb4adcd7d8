import logging

import numpy as np
import pytest

from hamchain import algorithms
from hamchain.burnin import (
    BurninStrategy,
    NoOpTuner,
    iterate_chain,
    iterate_chains,
    normalize_callbacks,
    run_tuning_cycle,
    tune_burnin,
)
from hamchain.chains import MCMCSpec
from hamchain.convergence import AlwaysConverged, ConvergenceTest, NeverConverged
from hamchain.errors import BurninError
from hamchain.posteriors import DensityPosterior
from hamchain.samples import SampleType

SEED = 3046987125
N_CHAIN = 3
NDIM = 2

STRATEGY = BurninStrategy(
    max_ncycles=4, max_nsamples_per_cycle=20, max_nsteps_per_cycle=100
)


@pytest.fixture
def spec():
    posterior = DensityPosterior(
        lambda v: -np.sum(v**2) / 2,
        ([-10.0] * NDIM, [10.0] * NDIM),
        grad_log_density=lambda v: -v,
    )
    return MCMCSpec(
        posterior,
        algorithms.HMCAlgorithm(
            metric="unit",
            adaptor=algorithms.StepSizeAdaptor(n_adapt_iter=30),
        ),
    )


@pytest.fixture
def chains(spec):
    return [spec(SEED, chain_id=i) for i in range(N_CHAIN)]


@pytest.fixture
def tuners(chains):
    return [NoOpTuner(chain) for chain in chains]


class CountingConvergence(ConvergenceTest):
    """Converges all chains on a given call."""

    def __init__(self, n_call_to_converge):
        self.n_call_to_converge = n_call_to_converge
        self.n_call = 0

    def __call__(self, chains, stats):
        self.n_call += 1
        converged = self.n_call >= self.n_call_to_converge
        return [(True, converged) for _ in chains]


def test_normalize_callbacks_none():
    callbacks = normalize_callbacks(None, 3)
    assert len(callbacks) == 3
    assert callbacks[0](1, None) is None


def test_normalize_callbacks_single():
    def callback(level, obj):
        pass

    assert normalize_callbacks(callback, 2) == [callback, callback]


def test_normalize_callbacks_sequence_with_none():
    def callback(level, obj):
        pass

    callbacks = normalize_callbacks([callback, None], 2)
    assert callbacks[0] is callback
    assert callable(callbacks[1])


def test_normalize_callbacks_wrong_length_raises():
    with pytest.raises(ValueError):
        normalize_callbacks([None, None], 3)


def test_iterate_chain_sample_quota(chains):
    chain = iterate_chain(chains[0], max_nsamples=15)
    assert chain.nsamples == 15
    assert chain.stepno == 15


def test_iterate_chain_step_quota(chains):
    chain = iterate_chain(chains[0], max_nsamples=100, max_nsteps=7)
    assert chain.stepno == 7


def test_iterate_chain_time_quota(chains):
    chain = iterate_chain(chains[0], max_time=0.0)
    assert chain.stepno == 0


def test_iterate_chain_quotas_relative_to_start(chains):
    chain = iterate_chain(chains[0], max_nsamples=5)
    chain = iterate_chain(chain, max_nsamples=5)
    assert chain.nsamples == 10


def test_iterate_chain_calls_callback(chains):
    levels = []
    iterate_chain(chains[0], lambda level, chain: levels.append(level), max_nsamples=4)
    assert levels == [1] * 4


@pytest.mark.parametrize("n_workers", [1, 2, 4])
def test_iterate_chains_independent_of_n_workers(spec, n_workers):
    reference = iterate_chains(
        [spec(SEED, chain_id=i) for i in range(N_CHAIN)], max_nsamples=10
    )
    chains = iterate_chains(
        [spec(SEED, chain_id=i) for i in range(N_CHAIN)],
        max_nsamples=10,
        n_workers=n_workers,
    )
    for chain, reference_chain in zip(chains, reference):
        assert chain.info.id == reference_chain.info.id
        assert np.all(chain.current_sample.v == reference_chain.current_sample.v)


def test_tuner_collects_accepted_samples(chains, tuners):
    run_tuning_cycle(None, tuners, chains, STRATEGY)
    for chain, tuner in zip(chains, tuners):
        assert chain.nsamples == STRATEGY.max_nsamples_per_cycle
        assert len(tuner.stats) == STRATEGY.max_nsamples_per_cycle
        assert np.all(tuner.stats.sample_type == SampleType.ACCEPTED)
        assert np.all(tuner.stats.chain_id == chain.info.id)


def test_tuner_reset(chains, tuners):
    run_tuning_cycle(None, tuners, chains, STRATEGY)
    tuners[0].reset()
    assert len(tuners[0].stats) == 0


def test_tuning_cycle_calls_user_callbacks(chains, tuners):
    counts = [0] * N_CHAIN

    def make_callback(i):
        def callback(level, chain):
            counts[i] += 1

        return callback

    run_tuning_cycle(
        [make_callback(i) for i in range(N_CHAIN)], tuners, chains, STRATEGY
    )
    assert counts == [STRATEGY.max_nsamples_per_cycle] * N_CHAIN


def test_burnin_never_converged_runs_max_ncycles(chains, tuners, caplog):
    with caplog.at_level(logging.INFO, logger="hamchain.burnin"):
        successful = tune_burnin(None, tuners, chains, NeverConverged(), STRATEGY)
    assert not successful
    assert all(chain.info.cycle == STRATEGY.max_ncycles - 1 for chain in chains)
    assert not any(chain.info.converged for chain in chains)
    assert f"Begin burn-in of {N_CHAIN} MCMC chain(s)." in caplog.text
    for cycle in range(1, STRATEGY.max_ncycles + 1):
        assert f"MCMC tuning cycle {cycle} finished, {N_CHAIN} chains" in caplog.text
    aborted = (
        f"MCMC tuning of {N_CHAIN} chains aborted after "
        f"{STRATEGY.max_ncycles} cycle(s)."
    )
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert [r.getMessage() for r in warnings] == [aborted]


def test_burnin_strict_mode_logs_error(chains, tuners, caplog):
    with caplog.at_level(logging.WARNING, logger="hamchain.burnin"):
        successful = tune_burnin(
            None, tuners, chains, NeverConverged(), STRATEGY, strict_mode=True
        )
    assert not successful
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert len(errors) == 1
    assert "aborted" in errors[0].getMessage()


def test_burnin_raise_mode_raises(chains, tuners):
    with pytest.raises(BurninError, match="aborted"):
        tune_burnin(None, tuners, chains, NeverConverged(), STRATEGY, strict_mode="raise")


def test_burnin_always_converged_single_cycle(chains, tuners, caplog):
    with caplog.at_level(logging.INFO, logger="hamchain.burnin"):
        successful = tune_burnin(None, tuners, chains, AlwaysConverged(), STRATEGY)
    assert successful
    assert all(chain.info.cycle == 0 for chain in chains)
    assert all(chain.info.tuned and chain.info.converged for chain in chains)
    assert "successful after 1 cycle(s)" in caplog.text


def test_burnin_stops_when_converged(chains, tuners):
    convergence_test = CountingConvergence(2)
    assert tune_burnin(None, tuners, chains, convergence_test, STRATEGY)
    assert convergence_test.n_call == 2
    assert all(chain.info.cycle == 1 for chain in chains)


def test_burnin_stats_restricted_to_latest_cycle(chains, tuners):
    tune_burnin(None, tuners, chains, NeverConverged(), STRATEGY)
    for tuner in tuners:
        assert len(tuner.stats) == STRATEGY.max_nsamples_per_cycle
        assert np.all(tuner.stats.cycle == STRATEGY.max_ncycles - 1)


def test_burnin_calls_user_callback_with_tuner(chains, tuners):
    received = []

    def callback(level, obj):
        if isinstance(obj, NoOpTuner):
            received.append((level, obj))

    tune_burnin(callback, tuners, chains, NeverConverged(), STRATEGY)
    assert len(received) == STRATEGY.max_ncycles * N_CHAIN
    assert all(level == 1 for level, _ in received)
    assert {id(tuner) for _, tuner in received} == {id(tuner) for tuner in tuners}


@pytest.mark.parametrize("n_workers", [1, 3])
def test_burnin_reproducible(spec, n_workers):
    positions = []
    for _ in range(2):
        chains = [spec(SEED, chain_id=i) for i in range(N_CHAIN)]
        tuners = [NoOpTuner(chain) for chain in chains]
        tune_burnin(
            None, tuners, chains, NeverConverged(), STRATEGY, n_workers=n_workers
        )
        positions.append(np.stack([chain.current_sample.v for chain in chains]))
    assert np.all(positions[0] == positions[1])
