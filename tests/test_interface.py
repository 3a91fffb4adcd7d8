import logging

import numpy as np
import pytest

import hamchain
from hamchain import algorithms
from hamchain.burnin import BurninStrategy, NoOpTuner
from hamchain.convergence import AlwaysConverged, NeverConverged
from hamchain.errors import BurninError, OutOfBoundsError
from hamchain.interface import HMCSampleChainsOutputs, sample_hmc_chains
from hamchain.posteriors import DensityPosterior
from hamchain.samples import SampleBuffer, SampleType

SEED = 3046987125
NDIM = 2
N_CHAIN = 2
N_SAMPLE = 50

STRATEGY = BurninStrategy(max_ncycles=3, max_nsamples_per_cycle=30)


def log_density(v):
    return -(v**2).sum() / 2


def grad_log_density(v):
    return -v


@pytest.fixture
def posterior():
    return DensityPosterior(
        log_density,
        ([-10.0] * NDIM, [10.0] * NDIM),
        grad_log_density=grad_log_density,
    )


@pytest.fixture
def algorithm():
    return algorithms.HMCAlgorithm(
        adaptor=algorithms.StanHMCAdaptor(n_adapt_iter=40)
    )


def _check_sample_chains_output(results, *, n_chain, n_sample):
    assert isinstance(results, HMCSampleChainsOutputs)
    assert isinstance(results.samples, SampleBuffer)
    assert len(results.chains) == n_chain
    assert len(results.samples) == n_chain * n_sample
    assert results.samples.v.shape == (n_chain * n_sample, NDIM)
    assert np.all(results.samples.sample_type == SampleType.ACCEPTED)
    assert np.all(np.isfinite(results.samples.logd))
    for chain_id in range(n_chain):
        assert np.sum(results.samples.chain_id == chain_id) == n_sample
    assert np.all(np.diff(results.samples.chain_id) >= 0)


def test_sample_hmc_chains(posterior, algorithm):
    results = sample_hmc_chains(
        posterior,
        N_CHAIN,
        N_SAMPLE,
        SEED,
        algorithm=algorithm,
        burnin=STRATEGY,
        convergence_test=AlwaysConverged(),
    )
    _check_sample_chains_output(results, n_chain=N_CHAIN, n_sample=N_SAMPLE)
    assert results.burnin_successful
    for chain in results.chains:
        assert not chain.adapting
        assert chain.engine.is_adapted
        assert chain.info.cycle == 1
        assert chain.nsamples == N_SAMPLE


def test_samples_within_bounds(posterior, algorithm):
    results = sample_hmc_chains(
        posterior,
        N_CHAIN,
        N_SAMPLE,
        SEED,
        algorithm=algorithm,
        burnin=STRATEGY,
        convergence_test=AlwaysConverged(),
    )
    assert all(v in posterior.bounds for v in results.samples.v)
    assert np.allclose(
        results.samples.logd, [log_density(v) for v in results.samples.v]
    )


def test_reproducible(posterior, algorithm):
    kwargs = {
        "algorithm": algorithm,
        "burnin": STRATEGY,
        "convergence_test": AlwaysConverged(),
    }
    results_1 = sample_hmc_chains(posterior, N_CHAIN, N_SAMPLE, SEED, **kwargs)
    results_2 = sample_hmc_chains(
        posterior, N_CHAIN, N_SAMPLE, SEED, n_workers=2, **kwargs
    )
    assert np.all(results_1.samples.v == results_2.samples.v)


def test_defaults(posterior):
    results = sample_hmc_chains(posterior, N_CHAIN, N_SAMPLE, SEED, burnin=STRATEGY)
    _check_sample_chains_output(results, n_chain=N_CHAIN, n_sample=N_SAMPLE)


def test_init_positions(posterior, algorithm):
    init_positions = [np.array([1.0, -1.0]), np.array([-2.0, 0.5])]
    results = sample_hmc_chains(
        posterior,
        N_CHAIN,
        N_SAMPLE,
        SEED,
        algorithm=algorithm,
        init_positions=init_positions,
        burnin=BurninStrategy(max_ncycles=1, max_nsamples_per_cycle=0),
        convergence_test=AlwaysConverged(),
    )
    assert all(chain.info.cycle == 1 for chain in results.chains)
    for c, init_position in enumerate(init_positions):
        assert np.all(results.samples[c * N_SAMPLE].v == init_position)


def test_wrong_number_of_init_positions_raises(posterior):
    with pytest.raises(ValueError):
        sample_hmc_chains(posterior, N_CHAIN, N_SAMPLE, SEED, init_positions=[[0, 0]])


def test_out_of_bounds_init_position_raises(posterior):
    with pytest.raises(OutOfBoundsError):
        sample_hmc_chains(
            posterior, 1, N_SAMPLE, SEED, init_positions=[np.array([11.0, 0.0])]
        )


def test_failed_burnin_reported(posterior, algorithm, caplog):
    with caplog.at_level(logging.WARNING, logger="hamchain.burnin"):
        results = sample_hmc_chains(
            posterior,
            N_CHAIN,
            N_SAMPLE,
            SEED,
            algorithm=algorithm,
            burnin=STRATEGY,
            convergence_test=NeverConverged(),
        )
    assert not results.burnin_successful
    assert "aborted after 3 cycle(s)" in caplog.text
    _check_sample_chains_output(results, n_chain=N_CHAIN, n_sample=N_SAMPLE)


def test_failed_burnin_raises_in_raise_mode(posterior, algorithm):
    with pytest.raises(BurninError):
        sample_hmc_chains(
            posterior,
            N_CHAIN,
            N_SAMPLE,
            SEED,
            algorithm=algorithm,
            burnin=STRATEGY,
            convergence_test=NeverConverged(),
            strict_mode="raise",
        )


def test_callbacks_called_during_burnin_and_sampling(posterior, algorithm):
    counts = {"chain": 0, "tuner": 0}

    def callback(level, obj):
        counts["tuner" if isinstance(obj, NoOpTuner) else "chain"] += 1

    sample_hmc_chains(
        posterior,
        N_CHAIN,
        N_SAMPLE,
        SEED,
        algorithm=algorithm,
        burnin=STRATEGY,
        convergence_test=AlwaysConverged(),
        callbacks=callback,
    )
    assert counts["tuner"] == N_CHAIN
    assert counts["chain"] == N_CHAIN * (STRATEGY.max_nsamples_per_cycle + N_SAMPLE)


def test_top_level_exports():
    assert hamchain.sample_hmc_chains is sample_hmc_chains
    assert hamchain.HMCAlgorithm is algorithms.HMCAlgorithm
    assert hamchain.DensityPosterior is DensityPosterior
