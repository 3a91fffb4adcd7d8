import logging

import numpy as np
import pytest

from hamchain import algorithms
from hamchain.chains import MCMCSpec
from hamchain.convergence import (
    AlwaysConverged,
    ConvergenceTest,
    GelmanRubinConvergence,
    NeverConverged,
    check_convergence,
    split_potential_scale_reduction,
)
from hamchain.posteriors import DensityPosterior
from hamchain.samples import SampleBuffer

SEED = 3046987125
N_CHAIN = 4
N_SAMPLE = 500
NDIM = 2


@pytest.fixture
def rng():
    return np.random.default_rng(SEED)


@pytest.fixture
def spec():
    posterior = DensityPosterior(
        lambda v: -np.sum(v**2) / 2, NDIM, grad_log_density=lambda v: -v
    )
    return MCMCSpec(
        posterior,
        algorithms.HMCAlgorithm(
            integrator=algorithms.Leapfrog(0.5), adaptor=algorithms.NoAdaptor()
        ),
    )


@pytest.fixture
def chains(spec):
    return [spec(SEED, chain_id=i) for i in range(N_CHAIN)]


def _buffer(values):
    buffer = SampleBuffer(NDIM)
    buffer.resize(len(values))
    buffer.v[:] = values
    buffer.weight[:] = 1.0
    return buffer


def test_r_hat_of_identical_distributions_close_to_one(rng):
    values = rng.standard_normal((N_CHAIN, N_SAMPLE, NDIM))
    r_hat = split_potential_scale_reduction(list(values))
    assert r_hat.shape == (NDIM,)
    assert np.all(abs(r_hat - 1) < 0.05)


def test_r_hat_of_shifted_chains_large(rng):
    values = rng.standard_normal((N_CHAIN, N_SAMPLE, NDIM))
    values[0] += 5
    r_hat = split_potential_scale_reduction(list(values))
    assert np.all(r_hat > 1.5)


def test_r_hat_detects_within_chain_trend(rng):
    values = rng.standard_normal((1, N_SAMPLE, NDIM))
    values[0, N_SAMPLE // 2 :] += 5
    assert np.all(split_potential_scale_reduction(list(values)) > 1.5)


def test_r_hat_uses_shortest_chain(rng):
    values = [rng.standard_normal((n, NDIM)) for n in (100, 40, 70)]
    r_hat = split_potential_scale_reduction(values)
    truncated = [v[:40] for v in values]
    assert np.allclose(r_hat, split_potential_scale_reduction(truncated))


@pytest.mark.parametrize("n_sample", [0, 1, 2, 3])
def test_r_hat_too_few_samples_is_inf(n_sample, rng):
    values = [rng.standard_normal((n_sample, NDIM)) for _ in range(N_CHAIN)]
    assert np.all(split_potential_scale_reduction(values) == np.inf)


def test_always_and_never_converged(chains):
    stats = [SampleBuffer(NDIM) for _ in chains]
    assert AlwaysConverged()(chains, stats) == [(True, True)] * N_CHAIN
    assert NeverConverged()(chains, stats) == [(False, False)] * N_CHAIN


def test_gelman_rubin_converged(chains, rng):
    stats = [_buffer(rng.standard_normal((N_SAMPLE, NDIM))) for _ in chains]
    assert GelmanRubinConvergence()(chains, stats) == [(True, True)] * N_CHAIN


def test_gelman_rubin_not_converged(chains, rng):
    stats = [_buffer(rng.standard_normal((N_SAMPLE, NDIM))) for _ in chains]
    stats[1].v[:] += 10
    assert GelmanRubinConvergence()(chains, stats) == [(True, False)] * N_CHAIN


def test_gelman_rubin_requires_tuned(spec, rng):
    algorithm = spec.algorithm._replace(
        adaptor=algorithms.StepSizeAdaptor(n_adapt_iter=100)
    )
    chains = [MCMCSpec(spec.posterior, algorithm)(SEED, i) for i in range(N_CHAIN)]
    stats = [_buffer(rng.standard_normal((N_SAMPLE, NDIM))) for _ in chains]
    assert GelmanRubinConvergence()(chains, stats) == [(False, False)] * N_CHAIN


def test_gelman_rubin_no_chains():
    assert GelmanRubinConvergence()([], []) == []


def test_check_convergence_no_chains():
    assert check_convergence(GelmanRubinConvergence(), [], []) == []


def test_gelman_rubin_logs_r_hat(chains, rng, caplog):
    stats = [_buffer(rng.standard_normal((N_SAMPLE, NDIM))) for _ in chains]
    with caplog.at_level(logging.DEBUG, logger="hamchain.convergence"):
        GelmanRubinConvergence()(chains, stats)
    assert "Maximum split R-hat over 4 chains" in caplog.text


def test_gelman_rubin_on_sampled_chains(chains):
    stats = [SampleBuffer(NDIM) for _ in chains]
    for chain, buffer in zip(chains, stats):
        for _ in range(N_SAMPLE):
            chain.step(lambda level, chain, buffer=buffer: chain.get_samples(buffer))
    results = GelmanRubinConvergence(threshold=1.1)(chains, stats)
    assert all(converged for _, converged in results)


def test_check_convergence_updates_info(chains):
    check_convergence(AlwaysConverged(), chains, [None] * N_CHAIN)
    assert all(chain.info.tuned and chain.info.converged for chain in chains)
    check_convergence(NeverConverged(), chains, [None] * N_CHAIN)
    assert not any(chain.info.tuned or chain.info.converged for chain in chains)


def test_check_convergence_wrong_length_raises(chains):
    class TooFewResults(ConvergenceTest):
        def __call__(self, chains, stats):
            return [(True, True)]

    with pytest.raises(ValueError):
        check_convergence(TooFewResults(), chains, [None] * N_CHAIN)
