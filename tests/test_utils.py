from math import exp, log

import numpy as np
import pytest

import hamchain

SEED = 3046987125


@pytest.fixture()
def rng():
    return np.random.default_rng(SEED)


@pytest.mark.parametrize("val", (-800.0, -10.0, 0.0, 2.5, 40.0, 800.0))
def test_log1p_exp(val):
    expected = val + np.log1p(np.exp(-val)) if val > 0 else np.log1p(np.exp(val))
    assert np.isclose(hamchain.utils.log1p_exp(val), expected)


@pytest.mark.parametrize("val1,val2", ((0.0, 0.0), (-1.0, 2.0), (700.0, 710.0)))
def test_log_sum_exp(val1, val2):
    assert np.isclose(hamchain.utils.log_sum_exp(val1, val2), np.logaddexp(val1, val2))


def test_log_sum_exp_both_neg_inf():
    assert hamchain.utils.log_sum_exp(-np.inf, -np.inf) == -np.inf


def get_val(obj):
    if isinstance(obj, hamchain.utils.LogRepFloat):
        return obj.val
    else:
        return obj


class TestLogRepFloat:
    VALS = sorted((0.0, 0.9, 1, 1.1, 2.1, 120.0))

    @pytest.fixture(params=VALS)
    def val_pair(self, request):
        val = request.param
        return hamchain.utils.LogRepFloat(val), val

    @pytest.fixture(params=VALS)
    def other_pair(self, request):
        val = request.param
        return hamchain.utils.LogRepFloat(val), val

    def test_init_from_log_val(self):
        assert np.isclose(hamchain.utils.LogRepFloat(log_val=log(2.5)).val, 2.5)

    def test_greater_than(self, val_pair, other_pair):
        if val_pair[1] != other_pair[1]:
            assert (val_pair[0] > other_pair[0]) == (val_pair[1] > other_pair[1])
            assert (val_pair[0] > other_pair[1]) == (val_pair[1] > other_pair[0])

    def test_less_than(self, val_pair, other_pair):
        if val_pair[1] != other_pair[1]:
            assert (val_pair[0] < other_pair[0]) == (val_pair[1] < other_pair[1])
            assert (val_pair[0] < other_pair[1]) == (val_pair[1] < other_pair[0])

    def test_greater_than_or_equal(self, val_pair, other_pair):
        assert val_pair[0] >= val_pair[0]
        if val_pair[1] != other_pair[1]:
            assert (val_pair[0] >= other_pair[0]) == (val_pair[1] >= other_pair[1])

    def test_less_than_or_equal(self, val_pair, other_pair):
        assert val_pair[0] <= val_pair[0]
        if val_pair[1] != other_pair[1]:
            assert (val_pair[0] <= other_pair[0]) == (val_pair[1] <= other_pair[1])

    def test_equal_to(self, val_pair, other_pair):
        assert val_pair[0] == val_pair[0]
        if val_pair[1] != other_pair[1]:
            assert (val_pair[0] == other_pair[0]) == (val_pair[1] == other_pair[1])

    def test_mult(self, val_pair, other_pair):
        assert np.isclose(
            get_val(val_pair[0] * other_pair[0]),
            get_val(val_pair[1] * other_pair[1]),
        )
        assert np.isclose(
            get_val(val_pair[0] * other_pair[1]),
            get_val(val_pair[1] * other_pair[0]),
        )

    def test_div(self, val_pair, other_pair):
        if other_pair[1] != 0:
            assert np.isclose(
                get_val(val_pair[0] / other_pair[0]),
                get_val(val_pair[1] / other_pair[1]),
            )

    def test_add(self, val_pair, other_pair):
        assert np.isclose(
            get_val(val_pair[0] + other_pair[0]),
            get_val(val_pair[1] + other_pair[1]),
        )
        assert np.isclose(
            get_val(val_pair[0] + other_pair[1]),
            get_val(val_pair[1] + other_pair[0]),
        )

    def test_iadd(self, val_pair, other_pair):
        sum_ = hamchain.utils.LogRepFloat(val_pair[1])
        sum_ += other_pair[0]
        assert np.isclose(get_val(sum_), val_pair[1] + other_pair[1])

    def test_array(self, val_pair):
        assert np.isclose(np.array(val_pair[0]), val_pair[1])

    def test_large_values_no_overflow(self):
        big = hamchain.utils.LogRepFloat(log_val=1000.0)
        ratio = big / hamchain.utils.LogRepFloat(log_val=999.0)
        assert np.isclose(get_val(ratio), exp(1))


class TestRNGPartition:
    @pytest.fixture(params=(SEED, np.random.SeedSequence(SEED)))
    def seed(self, request):
        return request.param

    def test_same_key_same_stream(self, seed):
        part_1 = hamchain.utils.RNGPartition(seed).subpartition(2, 3, 4)
        part_2 = hamchain.utils.RNGPartition(seed).subpartition(2, 3, 4)
        assert part_1 == part_2
        assert np.all(
            part_1.generator().standard_normal(10)
            == part_2.generator().standard_normal(10)
        )

    def test_nested_and_flat_keys_equal(self, seed):
        nested = hamchain.utils.RNGPartition(seed).subpartition(1).subpartition(5, 7)
        flat = hamchain.utils.RNGPartition(seed).subpartition(1, 5, 7)
        assert nested == flat
        assert nested.generator().integers(2**32) == flat.generator().integers(2**32)

    def test_different_keys_different_streams(self, seed):
        partition = hamchain.utils.RNGPartition(seed)
        draws = [
            partition.subpartition(*key).generator().standard_normal(5)
            for key in ((0, 0), (0, 1), (1, 0))
        ]
        for i in range(len(draws)):
            for j in range(i + 1, len(draws)):
                assert not np.allclose(draws[i], draws[j])

    def test_order_independent(self, seed):
        partition = hamchain.utils.RNGPartition(seed)
        first = partition.subpartition(3).generator().standard_normal(5)
        for key in range(5):
            partition.subpartition(key).generator().standard_normal(5)
        assert np.all(partition.subpartition(3).generator().standard_normal(5) == first)

    def test_generator_uses_philox(self, seed):
        generator = hamchain.utils.RNGPartition(seed).generator()
        assert isinstance(generator.bit_generator, np.random.Philox)

    def test_from_generator(self):
        partition = hamchain.utils.RNGPartition(np.random.default_rng(SEED))
        assert partition == hamchain.utils.RNGPartition(SEED)

    def test_negative_key_raises(self, seed):
        with pytest.raises(ValueError, match="non-negative"):
            hamchain.utils.RNGPartition(seed).subpartition(-1)


def test_thread_pool_map():
    with hamchain.utils.thread_pool(3) as pool:
        results = pool.map(lambda x: x**2, range(10))
    assert results == [x**2 for x in range(10)]
