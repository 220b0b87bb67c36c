from collections import namedtuple
import logging

import numpy as np

from fst import MalformedFstError, compose, compute_likelihood
from lattice import transform
from semiring import semiring_for

logger = logging.getLogger(__name__)

Score = namedtuple("Score", ["lattice_key", "query_key", "score"])


class SearchOptions(object):
    """Options of the lattice search.

    Args:
        acoustic_scale: Scaling factor for acoustic costs in the lattices.
        graph_scale: Scaling factor for graph costs in the lattices.
        insertion_penalty: Added to the graph cost of lattice arcs with a
                           non-epsilon output label.
        beam: Pruning beam, applied after scaling and adding the penalty.
        use_log: Score in the log semiring (forward) if True, in the
                 tropical semiring (Viterbi) otherwise.
    """

    def __init__(self, acoustic_scale=1.0, graph_scale=1.0, insertion_penalty=0.0,
                 beam=np.inf, use_log=True):
        for name, value in [("acoustic_scale", acoustic_scale),
                            ("graph_scale", graph_scale),
                            ("insertion_penalty", insertion_penalty)]:
            if not np.isfinite(value):
                raise ValueError(f"{name} must be finite, got {value}")
        if np.isnan(beam) or beam < 0:
            raise ValueError(f"beam must be non-negative, got {beam}")
        self.acoustic_scale = float(acoustic_scale)
        self.graph_scale = float(graph_scale)
        self.insertion_penalty = float(insertion_penalty)
        self.beam = float(beam)
        self.use_log = bool(use_log)
        self.semiring = semiring_for(self.use_log)

    def __repr__(self):
        return (f"SearchOptions(acoustic_scale={self.acoustic_scale}, "
                f"graph_scale={self.graph_scale}, "
                f"insertion_penalty={self.insertion_penalty}, "
                f"beam={self.beam}, use_log={self.use_log})")


def log_likelihood_ratio(query_likelihood, lattice_likelihood):
    """Score of a query, Q - L. When both are -inf (nothing to explain and
    nothing explained) the score is 0 rather than NaN."""
    if np.isneginf(query_likelihood) and np.isneginf(lattice_likelihood):
        return 0.0
    return query_likelihood - lattice_likelihood


class LatticeSearcher(object):
    """
    Scores queries against lattices.

    Example:
        >>> searcher = LatticeSearcher(SearchOptions(acoustic_scale=0.1))

        >>> queries = [("q1", searcher.prepare_query(query_fst))]

        >>> for score in searcher.search(read_kaldi_lattices(path), queries):
        ...     print(score)
    """

    def __init__(self, options=None):
        if options is None:
            options = SearchOptions()
        self.options = options
        self.semiring = options.semiring
        self.num_done = 0
        self.num_failed = 0

    def prepare_query(self, fst):
        """Maps a query into the scoring semiring and sorts it by input label.
        The query given is left untouched."""
        fst.validate()
        query = fst.map_weights(
            lambda w: self.semiring.from_value(fst.semiring.value(w)), self.semiring)
        if not query.is_ilabel_sorted():
            query.arcsort("ilabel")
        return query

    def prepare_queries(self, queries):
        """Prepares (key, query) pairs, skipping the malformed ones."""
        prepared = []
        for query_key, fst in queries:
            try:
                prepared.append((query_key, self.prepare_query(fst)))
            except MalformedFstError as e:
                logger.error("Skipping query %s: %s", query_key, e)
                self.num_failed += 1
        return prepared

    def transform(self, lattice):
        return transform(lattice, self.options)

    def query_likelihood(self, lattice_fst, query):
        return compute_likelihood(compose(lattice_fst, query))

    def score_lattice(self, lattice_key, lattice, queries):
        """
        Yields the Score of every query against one lattice.

        Args:
            lattice_key: Name of the lattice, used in the output and warnings.
            lattice: Lattice before any transformation.
            queries: List of (query key, prepared query) pairs; the key may be
                     None for a single anonymous query.
        """
        lattice_fst = self.transform(lattice)
        lattice_likelihood = compute_likelihood(lattice_fst)
        for query_key, query in queries:
            query_likelihood = self.query_likelihood(lattice_fst, query)
            if query_likelihood > lattice_likelihood:
                query_msg = "the query" if query_key is None else f'query "{query_key}"'
                logger.warning("The likelihood for %s is greater than the total "
                               "likelihood for lattice %s (%e vs. %e)!",
                               query_msg, lattice_key, query_likelihood, lattice_likelihood)
                query_likelihood = lattice_likelihood
            yield Score(lattice_key, query_key,
                        log_likelihood_ratio(query_likelihood, lattice_likelihood))

    def search(self, lattices, queries, lockstep=False):
        """
        Scores every lattice against the queries, in lattice order.

        Args:
            lattices: Iterable of (key, Lattice) pairs.
            queries: List of (query key, prepared query) pairs.
            lockstep: If True, score each lattice only against the query with
                      the same key.
        """
        by_key = dict(queries) if lockstep else None
        for lattice_key, lattice in lattices:
            if lockstep:
                if lattice_key not in by_key:
                    logger.warning("No query for lattice %s", lattice_key)
                    self.num_failed += 1
                    continue
                lattice_queries = [(lattice_key, by_key[lattice_key])]
            else:
                lattice_queries = queries
            try:
                scores = list(self.score_lattice(lattice_key, lattice, lattice_queries))
            except MalformedFstError as e:
                logger.error("Skipping lattice %s: %s", lattice_key, e)
                self.num_failed += 1
                continue
            self.num_done += 1
            yield from scores
