import logging

import numpy as np

from fst import EPSILON, Fst, shortest_distance
from semiring import LatticeSemiring, TropicalSemiring

logger = logging.getLogger(__name__)


class Lattice(Fst):
    """
    Implements a lattice representing recognized hypotheses in ASR.

    Arcs carry word labels and (graph cost, acoustic cost) weights of the
    LatticeSemiring. Before scoring, a lattice goes through the stages
    scale -> add_insertion_penalty -> prune -> to_fst, in this order: the
    penalty applies to scaled costs, and pruning sees the costs that the
    scores are computed from.

    Example:
        >>> from semiring import LogSemiring

        >>> from util import read_htk

        >>> key, lattice = read_htk(htk_path, symbols)

        >>> lattice.scale(graph_scale=1.0, acoustic_scale=0.1)

        >>> fst = lattice.to_fst(LogSemiring())
    """

    def __init__(self):
        super().__init__(LatticeSemiring())

    def _map_weights_in_place(self, f):
        for s in self.states():
            self._arcs[s] = [arc._replace(weight=f(arc.weight)) for arc in self._arcs[s]]
            if self.is_final(s):
                self._finals[s] = f(self._finals[s])

    def scale(self, graph_scale=1.0, acoustic_scale=1.0):
        """Scales the graph and acoustic costs of all arcs and final weights."""
        if graph_scale == 1.0 and acoustic_scale == 1.0:
            return self

        def scale_cost(cost, factor):
            # Keeps unreachable costs infinite when the factor is 0.
            return cost if np.isinf(cost) else cost * factor

        self._map_weights_in_place(lambda w: (scale_cost(w[0], graph_scale),
                                              scale_cost(w[1], acoustic_scale)))
        return self

    def add_insertion_penalty(self, penalty):
        """Adds the penalty to the graph cost of every arc with a word on its
        output side. Final weights are left as they are."""
        if penalty == 0.0:
            return self
        for s in self.states():
            arcs = self.mutable_arcs(s)
            for i, arc in enumerate(arcs):
                if arc.olabel != EPSILON:
                    graph, acoustic = arc.weight
                    arcs[i] = arc._replace(weight=(graph + penalty, acoustic))
            self.set_arcs(s, arcs)
        return self

    def prune(self, beam):
        """
        Removes the arcs and final weights that only lie on paths whose total
        cost is more than beam above the cost of the best path.
        """
        if beam < 0:
            raise ValueError(f"Pruning beam must be non-negative, got {beam}")
        if np.isinf(beam) or self.start is None:
            return self

        costs = self.map_weights(self.semiring.value, TropicalSemiring())
        alpha = shortest_distance(costs)
        beta = shortest_distance(costs, reverse=True)
        best = beta[self.start]
        if np.isinf(best):
            logger.warning("Lattice has no successful path, pruning removes everything")
        cutoff = best + beam

        num_arcs = self.num_arcs()
        for s in self.states():
            arcs = [arc for arc, cost_arc in zip(self.arcs(s), costs.arcs(s))
                    if alpha[s] + cost_arc.weight + beta[arc.nextstate] <= cutoff]
            self.set_arcs(s, arcs)
            if self.is_final(s) and alpha[s] + costs.final(s) > cutoff:
                self._finals[s] = self.semiring.zero()
        self.connect()
        logger.debug("Pruned lattice with beam %g from %d to %d arcs",
                     beam, num_arcs, self.num_arcs())
        return self

    def to_fst(self, semiring=None):
        """
        Converts the lattice into an automaton over a single-weight semiring,
        each weight becoming the sum of its graph and acoustic costs. The
        result is sorted by output label, ready for composition.
        """
        if semiring is None:
            semiring = TropicalSemiring()
        fst = self.map_weights(lambda w: semiring.from_value(self.semiring.value(w)), semiring)
        if not fst.is_olabel_sorted():
            fst.arcsort("olabel")
        return fst


def transform(lattice, options):
    """Applies the lattice pipeline of the given SearchOptions to a copy of
    the lattice and returns the automaton to score."""
    lattice.validate()
    lat = lattice.copy()
    lat.scale(options.graph_scale, options.acoustic_scale)
    lat.add_insertion_penalty(options.insertion_penalty)
    lat.prune(options.beam)
    return lat.to_fst(options.semiring)
