import logging

import numpy as np
import pytest

from fst import Arc, Fst
from lattice import Lattice
from search import LatticeSearcher, SearchOptions, Score, log_likelihood_ratio
from semiring import LogSemiring, TropicalSemiring

CAT, DOG, BIRD = 1, 2, 3


def two_path_lattice():
    """'cat' with total cost 1.0 and 'dog' with total cost 2.0."""
    lattice = Lattice()
    s, t = lattice.add_states(2)
    lattice.set_start(s)
    lattice.add_arc(s, Arc(CAT, CAT, (0.25, 0.75), t))
    lattice.add_arc(s, Arc(DOG, DOG, (1.5, 0.5), t))
    lattice.set_final(t)
    return lattice


def query(*labels, weight=0.0):
    """Tropical query accepting any one of the given labels."""
    fst = Fst(TropicalSemiring())
    s, t = fst.add_states(2)
    fst.set_start(s)
    for label in labels:
        fst.add_arc(s, Arc(label, label, weight, t))
    fst.set_final(t)
    return fst


def scores(searcher, lattices, queries, **kwargs):
    prepared = [(key, searcher.prepare_query(fst)) for key, fst in queries]
    return list(searcher.search(lattices, prepared, **kwargs))


def test_tropical_scores():
    searcher = LatticeSearcher(SearchOptions(use_log=False))
    result = scores(searcher, [("utt1", two_path_lattice())],
                    [("cat", query(CAT)), ("dog", query(DOG)), ("bird", query(BIRD))])
    assert result == [Score("utt1", "cat", 0.0),
                      Score("utt1", "dog", -1.0),
                      Score("utt1", "bird", -np.inf)]


def test_log_scores():
    searcher = LatticeSearcher(SearchOptions(use_log=True))
    lattice_fst = searcher.transform(two_path_lattice())
    np.testing.assert_allclose(searcher.query_likelihood(lattice_fst, searcher.prepare_query(
        query(CAT, DOG))), np.log(np.exp(-1.0) + np.exp(-2.0)))

    result = scores(searcher, [("utt1", two_path_lattice())],
                    [("both", query(CAT, DOG)), ("dog", query(DOG))])
    assert result[0].query_key == "both"
    np.testing.assert_allclose(result[0].score, 0.0, atol=1e-12)
    np.testing.assert_allclose(result[1].score, -2.0 - np.log(np.exp(-1.0) + np.exp(-2.0)))
    assert all(score.score <= 0.0 for score in result)


def test_pruned_scores():
    searcher = LatticeSearcher(SearchOptions(beam=0.5, use_log=True))
    result = scores(searcher, [("utt1", two_path_lattice())],
                    [("cat", query(CAT)), ("dog", query(DOG))])
    assert result == [Score("utt1", "cat", 0.0), Score("utt1", "dog", -np.inf)]


def test_score_exceeding_total_is_clamped(caplog):
    searcher = LatticeSearcher(SearchOptions(use_log=False))
    with caplog.at_level(logging.WARNING):
        result = scores(searcher, [("utt1", two_path_lattice())],
                        [("bonus", query(CAT, weight=-1.0))])
    assert result == [Score("utt1", "bonus", 0.0)]
    assert 'query "bonus"' in caplog.text
    assert "utt1" in caplog.text


def test_empty_lattice_scores_zero():
    searcher = LatticeSearcher(SearchOptions(use_log=True))
    result = scores(searcher, [("empty", Lattice())], [("cat", query(CAT))])
    assert result == [Score("empty", "cat", 0.0)]
    assert not np.isnan(result[0].score)


def test_anonymous_query():
    searcher = LatticeSearcher(SearchOptions(use_log=False))
    result = scores(searcher, [("utt1", two_path_lattice())], [(None, query(DOG))])
    assert result == [Score("utt1", None, -1.0)]


def test_lattices_keep_input_order():
    searcher = LatticeSearcher(SearchOptions(use_log=False))
    lattices = [(key, two_path_lattice()) for key in ["b", "a", "c"]]
    result = scores(searcher, lattices, [("cat", query(CAT))])
    assert [score.lattice_key for score in result] == ["b", "a", "c"]
    assert searcher.num_done == 3


def test_lockstep_pairs_queries_by_key(caplog):
    searcher = LatticeSearcher(SearchOptions(use_log=False))
    lattices = [("utt1", two_path_lattice()), ("utt2", two_path_lattice()),
                ("utt3", two_path_lattice())]
    queries = [("utt1", query(CAT)), ("utt2", query(DOG))]
    with caplog.at_level(logging.WARNING):
        result = scores(searcher, lattices, queries, lockstep=True)
    assert result == [Score("utt1", "utt1", 0.0), Score("utt2", "utt2", -1.0)]
    assert searcher.num_done == 2
    assert searcher.num_failed == 1
    assert "utt3" in caplog.text


def test_malformed_lattice_is_skipped(caplog):
    searcher = LatticeSearcher(SearchOptions(use_log=True))
    broken = two_path_lattice()
    broken.add_arc(1, Arc(CAT, CAT, (0.0, 0.0), 9))
    lattices = [("broken", broken), ("utt1", two_path_lattice())]
    with caplog.at_level(logging.ERROR):
        result = scores(searcher, lattices, [("cat", query(CAT))])
    assert [score.lattice_key for score in result] == ["utt1"]
    assert searcher.num_failed == 1
    assert searcher.num_done == 1
    assert "broken" in caplog.text


def test_prepare_query_leaves_query_untouched():
    searcher = LatticeSearcher(SearchOptions(use_log=True))
    fst = query(DOG, CAT)
    prepared = searcher.prepare_query(fst)
    assert prepared.semiring == LogSemiring()
    assert prepared.is_ilabel_sorted()
    assert [arc.ilabel for arc in prepared.arcs(0)] == [CAT, DOG]
    assert fst.semiring == TropicalSemiring()
    assert [arc.ilabel for arc in fst.arcs(0)] == [DOG, CAT]


def test_queries_are_reused_across_lattices():
    searcher = LatticeSearcher(SearchOptions(use_log=True))
    prepared = [("cat", searcher.prepare_query(query(CAT)))]
    before = str(prepared[0][1])
    list(searcher.search([("a", two_path_lattice()), ("b", two_path_lattice())], prepared))
    assert str(prepared[0][1]) == before


@pytest.mark.parametrize("kwargs", [{"beam": -1.0}, {"beam": np.nan},
                                    {"acoustic_scale": np.inf},
                                    {"insertion_penalty": np.nan}])
def test_invalid_options(kwargs):
    with pytest.raises(ValueError):
        SearchOptions(**kwargs)


def test_options_semiring():
    assert SearchOptions().semiring == LogSemiring()
    assert SearchOptions(use_log=False).semiring == TropicalSemiring()
    assert SearchOptions().beam == np.inf


def test_log_likelihood_ratio():
    assert log_likelihood_ratio(-3.0, -1.0) == -2.0
    assert log_likelihood_ratio(-np.inf, -1.0) == -np.inf
    assert log_likelihood_ratio(-np.inf, -np.inf) == 0.0


def test_malformed_query_is_skipped(caplog):
    searcher = LatticeSearcher(SearchOptions(use_log=False))
    broken = query(CAT)
    broken.add_arc(0, Arc(CAT, CAT, 0.0, 9))
    with caplog.at_level(logging.ERROR):
        prepared = searcher.prepare_queries([("broken", broken), ("cat", query(CAT))])
    assert [key for key, _ in prepared] == ["cat"]
    assert searcher.num_failed == 1
    assert "broken" in caplog.text
    assert list(searcher.search([("utt1", two_path_lattice())], prepared)) == [
        Score("utt1", "cat", 0.0)]
