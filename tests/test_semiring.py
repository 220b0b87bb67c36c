import numpy as np
import pytest

from semiring import LatticeSemiring, LogSemiring, TropicalSemiring, semiring_for

SEMIRINGS = [TropicalSemiring(), LogSemiring()]


def sample_pairs(n=50, seed=0):
    rng = np.random.default_rng(seed)
    return [tuple(x) for x in rng.uniform(-10.0, 10.0, size=(n, 3))]


@pytest.mark.parametrize("semiring", SEMIRINGS, ids=lambda s: s.name)
def test_semiring_laws(semiring):
    for a, b, c in sample_pairs():
        np.testing.assert_allclose(semiring.plus(a, b), semiring.plus(b, a))
        np.testing.assert_allclose(semiring.plus(semiring.plus(a, b), c),
                                   semiring.plus(a, semiring.plus(b, c)))
        np.testing.assert_allclose(semiring.times(semiring.times(a, b), c),
                                   semiring.times(a, semiring.times(b, c)))
        np.testing.assert_allclose(semiring.times(a, semiring.plus(b, c)),
                                   semiring.plus(semiring.times(a, b), semiring.times(a, c)))
        assert semiring.plus(a, semiring.zero()) == a
        assert semiring.times(a, semiring.one()) == a


@pytest.mark.parametrize("semiring", SEMIRINGS, ids=lambda s: s.name)
def test_infinity_never_gives_nan(semiring):
    inf = semiring.zero()
    assert inf == np.inf
    assert semiring.plus(inf, inf) == np.inf
    assert semiring.times(inf, inf) == np.inf
    assert semiring.times(inf, 3.0) == np.inf
    assert semiring.plus(inf, 2.5) == 2.5
    assert semiring.add([]) == np.inf
    assert semiring.add([inf, inf]) == np.inf
    assert semiring.multiply([]) == 0.0


def test_tropical_plus_is_min():
    semiring = TropicalSemiring()
    assert semiring.plus(1.0, 2.0) == 1.0
    assert semiring.add([3.0, 1.5, 2.0]) == 1.5
    assert semiring.multiply([1.0, 2.0, 0.5]) == 3.5


def test_log_plus_sums_probabilities():
    semiring = LogSemiring()
    expected = -np.log(np.exp(-1.0) + np.exp(-2.0))
    np.testing.assert_allclose(semiring.plus(1.0, 2.0), expected)
    np.testing.assert_allclose(semiring.add([1.0, 2.0]), expected)
    np.testing.assert_allclose(semiring.add([1.0, 2.0, np.inf]), expected)
    # Two equally likely paths double the probability.
    np.testing.assert_allclose(semiring.plus(0.0, 0.0), -np.log(2.0))


def test_lattice_semiring():
    semiring = LatticeSemiring()
    a = (0.25, 0.75)
    b = (1.5, 0.5)
    assert semiring.times(a, b) == (1.75, 1.25)
    assert semiring.plus(a, b) == a
    assert semiring.plus(b, a) == a
    assert semiring.plus(a, semiring.zero()) == a
    assert semiring.times(a, semiring.one()) == a
    assert semiring.value(b) == 2.0
    assert semiring.is_zero(semiring.zero())
    assert not semiring.is_zero(semiring.one())
    # Equal totals are resolved by the graph cost, in either order.
    c = (0.125, 0.875)
    assert semiring.plus(a, c) == c
    assert semiring.plus(c, a) == c


def test_semiring_for():
    assert isinstance(semiring_for(True), LogSemiring)
    assert isinstance(semiring_for(False), TropicalSemiring)
    assert semiring_for(True) == LogSemiring()
    assert semiring_for(True) != TropicalSemiring()
