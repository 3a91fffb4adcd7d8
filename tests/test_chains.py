import logging

import numpy as np
import pytest

from hamchain import algorithms
from hamchain.chains import ChainInfo, HMCChain, MCMCSpec
from hamchain.errors import OutOfBoundsError
from hamchain.posteriors import DensityPosterior, HyperRectBounds
from hamchain.samples import SampleBuffer, SampleType

SEED = 3046987125
N_STEP = 100


@pytest.fixture
def posterior():
    return DensityPosterior(
        lambda v: -np.sum(v**2) / 2,
        HyperRectBounds([-10.0, -10.0], [10.0, 10.0]),
        grad_log_density=lambda v: -v,
    )


@pytest.fixture(
    params=(
        algorithms.HMCAlgorithm(),
        algorithms.HMCAlgorithm(
            metric="unit",
            proposal=algorithms.FixedStepNumber(5),
            adaptor=algorithms.StepSizeAdaptor(n_adapt_iter=50),
        ),
        algorithms.HMCAlgorithm(
            metric="dense",
            integrator=algorithms.JitteredLeapfrog(0.5, 0.2),
            proposal=algorithms.NUTS(sampling="slice", termination="classic"),
            adaptor=algorithms.NoAdaptor(),
        ),
    ),
    ids=("default", "static-step-size-adapted", "slice-not-adapted"),
)
def spec(posterior, request):
    return MCMCSpec(posterior, request.param)


@pytest.fixture
def chain(spec):
    return spec(SEED, chain_id=1, init_position=[0.0, 0.0])


def _assert_single_current(chain):
    assert len(chain.samples) == 1
    assert chain.samples.sample_type[0] == SampleType.CURRENT
    assert np.sum(chain.samples.sample_type == SampleType.CURRENT) == 1


def _run(chain, n_step, callback=None):
    for _ in range(n_step):
        chain.step(callback)


def test_construction(chain):
    assert chain.info == ChainInfo(id=1, cycle=0, tuned=False, converged=False)
    assert chain.stepno == 0
    assert chain.nsamples == 0
    _assert_single_current(chain)
    sample = chain.current_sample
    assert np.all(sample.v == 0)
    assert sample.logd == 0
    assert sample.weight == 1
    assert sample.id.chain_id == 1
    assert chain.step_size > 0


def test_construction_from_start_value(spec):
    chain = spec(SEED)
    assert chain.current_sample.v in spec.posterior.bounds
    assert np.isfinite(chain.current_sample.logd)


def test_construction_out_of_bounds_raises(spec):
    with pytest.raises(OutOfBoundsError):
        spec(SEED, init_position=[20.0, 0.0])


def test_construction_does_not_modify_algorithm(spec):
    algorithm = spec.algorithm
    spec(SEED)
    assert spec.algorithm is algorithm
    assert spec.algorithm == algorithm


def test_spec_call_builds_chain(spec):
    assert isinstance(spec(SEED, 3), HMCChain)


def test_single_current_invariant(chain):
    for _ in range(20):
        chain.step()
        _assert_single_current(chain)


def test_step_counts(chain):
    for n in range(1, 11):
        chain.step()
        assert chain.stepno == n
        assert chain.nsamples == n


def test_example_scenario(chain, posterior):
    visited = []

    def record(level, chain):
        visited.append(chain.samples.v[-1].copy())

    _run(chain, N_STEP, record)
    assert chain.nsamples == N_STEP
    assert len(chain.samples) == 1
    visited = np.array(visited)
    assert visited.shape == (N_STEP, 2)
    assert np.all(visited >= -10) and np.all(visited <= 10)


def test_step_callback_sees_two_entries(chain):
    calls = []

    def callback(level, chain):
        calls.append(level)
        assert len(chain.samples) == 2
        assert chain.samples.sample_type[0] == SampleType.ACCEPTED
        assert chain.samples.sample_type[1] == SampleType.CURRENT
        assert chain.samples.weight[0] == 1
        assert chain.samples.weight[1] == 1
        assert chain.samples_available()

    _run(chain, 5, callback)
    assert calls == [1] * 5


def test_new_current_sample_after_step(chain):
    proposed = []

    def callback(level, chain):
        proposed.append(chain.samples[-1])

    chain.step(callback)
    current = chain.current_sample
    assert np.all(current.v == proposed[0].v)
    assert current.logd == proposed[0].logd
    assert current.id.step == 1
    assert current.id.sample_type == SampleType.CURRENT
    assert np.all(current.v == chain.state.pos)


def test_current_logd_matches_posterior(chain, posterior):
    _run(chain, 10)
    sample = chain.current_sample
    assert np.isclose(sample.logd, posterior.log_density(sample.v))


def test_get_samples_harvests_accepted(chain):
    collector = SampleBuffer.empty(2)
    steps_seen = []

    def callback(level, chain):
        steps_seen.append(chain.samples[0].id.step)
        chain.get_samples(collector)

    _run(chain, 10, callback)
    assert len(collector) == 10
    assert np.all(collector.sample_type == SampleType.ACCEPTED)
    assert list(collector.step) == steps_seen == list(range(10))
    assert np.all(collector.chain_id == 1)


def test_get_samples_into_list(chain):
    collected = []
    chain.step(lambda level, chain: chain.get_samples(collected))
    assert len(collected) == 1
    assert collected[0].id.sample_type == SampleType.ACCEPTED


def test_get_samples_without_available_is_no_op(chain):
    collector = SampleBuffer.empty(2)
    assert not chain.samples_available()
    assert chain.get_samples(collector) is collector
    assert len(collector) == 0
    chain.step()
    chain.get_samples(collector)
    assert len(collector) == 0


def test_get_samples_nonzero_weights(chain):
    collector = []

    def callback(level, chain):
        chain.samples.weight[0] = 0.0
        chain.get_samples(collector, nonzero_weights=True)

    _run(chain, 3, callback)
    assert collector == []


def test_next_cycle(chain):
    _run(chain, 7)
    current = chain.current_sample
    chain.next_cycle()
    assert chain.info.cycle == 1
    assert chain.stepno == 0
    assert chain.nsamples == 0
    _assert_single_current(chain)
    new_current = chain.current_sample
    assert np.all(new_current.v == current.v)
    assert new_current.logd == current.logd
    assert new_current.weight == 1
    assert new_current.id.cycle == 1
    assert new_current.id.step == 0


def test_next_cycle_repeated(chain):
    for cycle in range(1, 4):
        chain.step()
        chain.next_cycle()
        assert chain.info.cycle == cycle
        _assert_single_current(chain)


def test_next_cycle_keeps_tuning_flags(chain):
    chain.info = chain.info._replace(tuned=True)
    chain.next_cycle()
    assert chain.info.tuned


def _trajectory(chain, n_cycle, n_step):
    positions = []
    for _ in range(n_cycle):
        for _ in range(n_step):
            chain.step()
            positions.append(chain.current_sample.v)
        chain.next_cycle()
    return np.array(positions)


def test_reproducibility(spec):
    chain_1 = spec(SEED, chain_id=2)
    chain_2 = spec(SEED, chain_id=2)
    assert np.all(_trajectory(chain_1, 3, 10) == _trajectory(chain_2, 3, 10))


def test_reproducibility_independent_of_interleaving(spec):
    chains_1 = [spec(SEED, chain_id=i) for i in range(2)]
    positions_1 = [_trajectory(chain, 1, 10) for chain in chains_1]
    chains_2 = [spec(SEED, chain_id=i) for i in range(2)]
    positions_2 = [[], []]
    for _ in range(10):
        for i in (1, 0):
            chains_2[i].step()
            positions_2[i].append(chains_2[i].current_sample.v)
    for i in range(2):
        assert np.all(positions_1[i] == np.array(positions_2[i]))


def test_distinct_chain_ids_give_distinct_streams(spec):
    chain_1 = spec(SEED, chain_id=0, init_position=[0.0, 0.0])
    chain_2 = spec(SEED, chain_id=1, init_position=[0.0, 0.0])
    assert not np.all(_trajectory(chain_1, 1, 5) == _trajectory(chain_2, 1, 5))


def test_stop_adaptation(chain):
    _run(chain, 5)
    chain.stop_adaptation()
    assert not chain.adapting
    assert chain.engine.is_adapted
    step_size = chain.engine.step_size
    _run(chain, 5)
    assert chain.engine.step_size == step_size


def test_last_stats(chain):
    chain.step()
    assert 0 <= chain.last_stats["accept_stat"] <= 1


def test_invalid_proposal_kept_as_sentinel(chain, caplog):
    def out_of_bounds_step(state, rng):
        state = state.copy()
        state.pos = np.array([50.0, 0.0])
        return state, {"accept_stat": 0.0}

    chain.engine.step = out_of_bounds_step
    with caplog.at_level(logging.DEBUG, logger="hamchain.chains"):
        chain.step()
    assert chain.current_sample.logd == -np.inf
    assert chain.nsamples == 1
    assert "Invalid log density for proposed sample of chain 1" in caplog.text


def _raise_runtime_error(*args, **kwargs):
    msg = "failure"
    raise RuntimeError(msg)


def test_raising_callback_completes_step(chain):
    with pytest.raises(RuntimeError):
        chain.step(_raise_runtime_error)
    _assert_single_current(chain)
    assert chain.stepno == 1
    assert chain.nsamples == 1
    assert np.all(chain.current_sample.v == chain.state.pos)
    assert chain.current_sample.id.step == 1
    chain.step()
    _assert_single_current(chain)
    assert chain.stepno == 2
    chain.next_cycle()
    _assert_single_current(chain)
    assert chain.info.cycle == 1


def test_raising_transition_leaves_chain_unchanged(chain):
    current = chain.current_sample
    state = chain.state
    engine_step = chain.engine.step
    chain.engine.step = _raise_runtime_error
    with pytest.raises(RuntimeError):
        chain.step()
    _assert_single_current(chain)
    assert chain.stepno == 0
    assert chain.nsamples == 0
    assert chain.state is state
    assert np.all(chain.current_sample.v == current.v)
    assert chain.current_sample.id == current.id
    chain.engine.step = engine_step
    chain.step()
    assert chain.stepno == 1
    chain.next_cycle()
    _assert_single_current(chain)


def test_raising_adaptation_completes_step(chain):
    chain.adapting = True
    chain.engine.adapt = _raise_runtime_error
    with pytest.raises(RuntimeError):
        chain.step()
    _assert_single_current(chain)
    assert chain.stepno == 1
    assert chain.nsamples == 1
    chain.adapting = False
    chain.step()
    assert chain.stepno == 2
    _assert_single_current(chain)


def test_raising_step_reproducible_after_recovery(spec):
    chain_1 = spec(SEED, chain_id=0, init_position=[0.0, 0.0])
    chain_2 = spec(SEED, chain_id=0, init_position=[0.0, 0.0])
    engine_step = chain_1.engine.step
    chain_1.engine.step = _raise_runtime_error
    with pytest.raises(RuntimeError):
        chain_1.step()
    chain_1.engine.step = engine_step
    assert np.all(_trajectory(chain_1, 1, 5) == _trajectory(chain_2, 1, 5))


def test_repr(chain):
    chain.step()
    assert repr(chain) == "HMCChain(id=1, cycle=0, stepno=1, nsamples=1)"
