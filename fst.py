from bisect import bisect_left, bisect_right
from collections import deque, namedtuple
import logging

import numpy as np

from semiring import TropicalSemiring

logger = logging.getLogger(__name__)

EPSILON = 0

# Convergence threshold of the shortest distance on cyclic automata.
DELTA = 1.0 / 1024

SORT_TYPES = ("ilabel", "olabel")


class MalformedFstError(ValueError):
    """Raised when an automaton refers to states it does not have."""


Arc = namedtuple("Arc", ["ilabel", "olabel", "weight", "nextstate"])


class Fst(object):
    """
    Weighted finite-state transducer over a given semiring.

    States are the integers 0..num_states()-1 in creation order. The start
    state is None for an automaton that accepts nothing. A state is final
    when its final weight is not the semiring zero.

    Example:
        >>> from semiring import LogSemiring

        >>> fst = Fst(LogSemiring())

        >>> s, t = fst.add_states(2)

        >>> fst.set_start(s)

        >>> fst.add_arc(s, Arc(3, 3, 1.5, t))

        >>> fst.set_final(t)
    """

    def __init__(self, semiring=None):
        if semiring is None:
            semiring = TropicalSemiring()
        self.semiring = semiring
        self._start = None
        self._arcs = []
        self._finals = []
        self._properties = {}

    def __repr__(self):
        return (f"{type(self).__name__}({self.semiring.name}, "
                f"{self.num_states()} states, {self.num_arcs()} arcs)")

    def __str__(self):
        """AT&T text rendering, start state first."""
        lines = []
        order = list(self.states())
        if self._start is not None:
            order.remove(self._start)
            order.insert(0, self._start)
        for s in order:
            for arc in self._arcs[s]:
                lines.append(f"{s}\t{arc.nextstate}\t{arc.ilabel}\t{arc.olabel}"
                             f"\t{self.semiring.value(arc.weight):g}")
        for s in order:
            if self.is_final(s):
                lines.append(f"{s}\t{self.semiring.value(self._finals[s]):g}")
        return "\n".join(lines)

    # States.

    @property
    def start(self):
        return self._start

    def set_start(self, s):
        self._start = s

    def add_state(self):
        self._arcs.append([])
        self._finals.append(self.semiring.zero())
        return len(self._arcs) - 1

    def add_states(self, n):
        return [self.add_state() for _ in range(n)]

    def num_states(self):
        return len(self._arcs)

    def states(self):
        return range(len(self._arcs))

    def delete_states(self):
        self._start = None
        self._arcs = []
        self._finals = []
        self._properties = {}

    def set_final(self, s, weight=None):
        if weight is None:
            weight = self.semiring.one()
        self._check_state(s)
        self._finals[s] = weight

    def final(self, s):
        return self._finals[s]

    def is_final(self, s):
        return not self.semiring.is_zero(self._finals[s])

    def finals(self):
        """Iterator over (state, final weight) of the final states."""
        for s, weight in enumerate(self._finals):
            if not self.semiring.is_zero(weight):
                yield s, weight

    # Arcs.

    def add_arc(self, s, arc):
        self._check_state(s)
        self._arcs[s].append(arc)
        self._properties = {}

    def arcs(self, s):
        """Outgoing arcs of a state. The list must not be modified."""
        return self._arcs[s]

    def mutable_arcs(self, s):
        """Copy of the outgoing arcs of a state, to be edited and stored
        back with set_arcs()."""
        return list(self._arcs[s])

    def set_arcs(self, s, arcs):
        self._check_state(s)
        self._arcs[s] = list(arcs)
        self._properties = {}

    def num_arcs(self, s=None):
        if s is None:
            return sum(len(arcs) for arcs in self._arcs)
        return len(self._arcs[s])

    def _check_state(self, s):
        if not 0 <= s < len(self._arcs):
            raise MalformedFstError(f"State {s} does not exist")

    def validate(self):
        """Raises MalformedFstError if the start state or an arc
        destination is not a state of this automaton."""
        n = len(self._arcs)
        if self._start is not None and not 0 <= self._start < n:
            raise MalformedFstError(f"Start state {self._start} does not exist")
        for s, arcs in enumerate(self._arcs):
            for arc in arcs:
                if not 0 <= arc.nextstate < n:
                    raise MalformedFstError(
                        f"Arc from state {s} goes to missing state {arc.nextstate}")
        return self

    # Whole-automaton operations.

    def copy(self):
        fst = type(self).__new__(type(self))
        fst.__dict__.update(self.__dict__)
        fst._arcs = [list(arcs) for arcs in self._arcs]
        fst._finals = list(self._finals)
        fst._properties = dict(self._properties)
        return fst

    def map_weights(self, f, semiring=None):
        """
        Returns an isomorphic automaton whose arc and final weights are
        mapped through f, optionally into another semiring.
        """
        if semiring is None:
            semiring = self.semiring
        fst = Fst(semiring)
        fst.add_states(self.num_states())
        fst._start = self._start
        for s in self.states():
            fst._arcs[s] = [arc._replace(weight=f(arc.weight)) for arc in self._arcs[s]]
            if self.is_final(s):
                fst._finals[s] = f(self._finals[s])
        # Labels are untouched, so sortedness carries over.
        fst._properties = dict(self._properties)
        return fst

    def arcsort(self, sort_type="ilabel"):
        """Sorts the arcs of every state by input or output label."""
        if sort_type not in SORT_TYPES:
            raise ValueError(f"Unknown sort type {sort_type!r}")
        if self._properties.get(sort_type):
            return self
        key = (lambda arc: arc.ilabel) if sort_type == "ilabel" else (lambda arc: arc.olabel)
        for arcs in self._arcs:
            arcs.sort(key=key)
        self._properties = {sort_type: True}
        return self

    def is_sorted(self, sort_type):
        if sort_type not in self._properties:
            field = SORT_TYPES.index(sort_type)
            self._properties[sort_type] = all(
                arcs[i][field] <= arcs[i + 1][field]
                for arcs in self._arcs for i in range(len(arcs) - 1))
        return self._properties[sort_type]

    def is_ilabel_sorted(self):
        return self.is_sorted("ilabel")

    def is_olabel_sorted(self):
        return self.is_sorted("olabel")

    def reverse_arcs(self):
        """Incoming arcs of every state as (source state, arc) pairs."""
        incoming = [[] for _ in self._arcs]
        for s, arcs in enumerate(self._arcs):
            for arc in arcs:
                incoming[arc.nextstate].append((s, arc))
        return incoming

    def topological_order(self):
        """Topologically sorted states, or None if the automaton has a cycle."""
        n = len(self._arcs)
        color = [0] * n  # 0 unvisited, 1 on the stack, 2 done
        reverse_sort = []
        for root in self.states():
            if color[root]:
                continue
            color[root] = 1
            stack = [(root, iter(self._arcs[root]))]
            while stack:
                node, it = stack[-1]
                for arc in it:
                    nxt = arc.nextstate
                    if color[nxt] == 1:
                        return None
                    if color[nxt] == 0:
                        color[nxt] = 1
                        stack.append((nxt, iter(self._arcs[nxt])))
                        break
                else:
                    color[node] = 2
                    reverse_sort.append(node)
                    stack.pop()
        return reverse_sort[::-1]

    def connect(self):
        """Removes the states that are not both accessible and coaccessible."""
        if self._start is None:
            self.delete_states()
            return self
        n = len(self._arcs)
        access = [False] * n
        access[self._start] = True
        stack = [self._start]
        while stack:
            s = stack.pop()
            for arc in self._arcs[s]:
                if not access[arc.nextstate]:
                    access[arc.nextstate] = True
                    stack.append(arc.nextstate)
        incoming = self.reverse_arcs()
        coaccess = [False] * n
        stack = [s for s, _ in self.finals()]
        for s in stack:
            coaccess[s] = True
        while stack:
            s = stack.pop()
            for prev, _ in incoming[s]:
                if not coaccess[prev]:
                    coaccess[prev] = True
                    stack.append(prev)

        if not (access[self._start] and coaccess[self._start]):
            self.delete_states()
            return self

        remap = {}
        for s in range(n):
            if access[s] and coaccess[s]:
                remap[s] = len(remap)
        arcs = []
        finals = []
        for s in remap:
            arcs.append([arc._replace(nextstate=remap[arc.nextstate])
                         for arc in self._arcs[s] if arc.nextstate in remap])
            finals.append(self._finals[s])
        self._start = remap[self._start]
        self._arcs = arcs
        self._finals = finals
        # Arc order within a state is preserved.
        self._properties = {k: v for k, v in self._properties.items() if v}
        return self


class _Matcher(object):
    """Finds the arcs of an automaton state carrying a given input label."""

    def __init__(self, fst):
        self.fst = fst
        self.indexed = fst.is_ilabel_sorted()
        self._labels = {}

    def find(self, s, label):
        arcs = self.fst.arcs(s)
        if not self.indexed:
            return [arc for arc in arcs if arc.ilabel == label]
        labels = self._labels.get(s)
        if labels is None:
            labels = self._labels[s] = [arc.ilabel for arc in arcs]
        lo = bisect_left(labels, label)
        hi = bisect_right(labels, label, lo)
        return arcs[lo:hi]


def compose(fst1, fst2):
    """
    Composes two automata, matching the output labels of fst1 with the
    input labels of fst2.

    Epsilon moves are filtered so that every pair of paths contributes
    exactly one composed path, which keeps the sums of the log semiring
    exact. Lookups into fst2 are indexed when fst2 is sorted by input label.
    The result is connected; it has no start state when no path of fst1 is
    accepted by fst2.
    """
    if fst1.semiring != fst2.semiring:
        raise ValueError(f"Cannot compose {fst1.semiring.name} with {fst2.semiring.name} weights")
    semiring = fst1.semiring
    result = Fst(semiring)
    if fst1.start is None or fst2.start is None:
        return result

    matcher = _Matcher(fst2)
    state_ids = {}
    queue = deque()

    def state_id(triple):
        s = state_ids.get(triple)
        if s is None:
            s = state_ids[triple] = result.add_state()
            queue.append(triple)
        return s

    # Filter state 1: fst1 moved alone on epsilon, 2: fst2 moved alone.
    result.set_start(state_id((fst1.start, fst2.start, 0)))
    while queue:
        triple = queue.popleft()
        s1, s2, filter_state = triple
        s = state_ids[triple]
        final = semiring.times(fst1.final(s1), fst2.final(s2))
        if not semiring.is_zero(final):
            result.set_final(s, final)
        for arc1 in fst1.arcs(s1):
            if arc1.olabel == EPSILON:
                if filter_state != 2:
                    result.add_arc(s, Arc(arc1.ilabel, EPSILON, arc1.weight,
                                          state_id((arc1.nextstate, s2, 1))))
                if filter_state != 0:
                    continue
            for arc2 in matcher.find(s2, arc1.olabel):
                result.add_arc(s, Arc(arc1.ilabel, arc2.olabel,
                                      semiring.times(arc1.weight, arc2.weight),
                                      state_id((arc1.nextstate, arc2.nextstate, 0))))
        if filter_state != 1:
            for arc2 in matcher.find(s2, EPSILON):
                result.add_arc(s, Arc(EPSILON, arc2.olabel, arc2.weight,
                                      state_id((s1, arc2.nextstate, 2))))
    return result.connect()


def shortest_distance(fst, reverse=False, delta=DELTA):
    """
    Computes the shortest distance of every state under the semiring of the
    automaton.

    Args:
        fst: Automaton whose arc destinations are valid states.
        reverse: If False, distances from the start state; if True, distances
                 to the final states, final weights included.
        delta: Convergence threshold used on cyclic automata.
    Returns:
        List of weights indexed by state.
    """
    semiring = fst.semiring
    n = fst.num_states()
    distance = [semiring.zero()] * n
    if fst.start is None:
        return distance

    order = fst.topological_order()
    if order is not None:
        if not reverse:
            distance[fst.start] = semiring.one()
            for s in order:
                d = distance[s]
                if semiring.is_zero(d):
                    continue
                for arc in fst.arcs(s):
                    distance[arc.nextstate] = semiring.plus(
                        distance[arc.nextstate], semiring.times(d, arc.weight))
        else:
            for s in reversed(order):
                d = fst.final(s)
                for arc in fst.arcs(s):
                    d = semiring.plus(d, semiring.times(arc.weight, distance[arc.nextstate]))
                distance[s] = d
        return distance

    logger.debug("Automaton is cyclic, computing shortest distance with delta=%g", delta)
    if not reverse:
        sources = [(fst.start, semiring.one())]
        edges = [[(arc.nextstate, arc.weight) for arc in fst.arcs(s)] for s in fst.states()]
    else:
        sources = list(fst.finals())
        edges = [[] for _ in fst.states()]
        for s in fst.states():
            for arc in fst.arcs(s):
                edges[arc.nextstate].append((s, arc.weight))
    return _generic_shortest_distance(semiring, n, sources, edges, delta)


def _generic_shortest_distance(semiring, n, sources, edges, delta):
    """Single-source shortest distance with residual weights and a FIFO
    queue, for automata with cycles."""
    distance = [semiring.zero()] * n
    residual = [semiring.zero()] * n
    queue = deque()
    enqueued = [False] * n
    for s, w in sources:
        distance[s] = semiring.plus(distance[s], w)
        residual[s] = semiring.plus(residual[s], w)
        if not enqueued[s]:
            enqueued[s] = True
            queue.append(s)
    while queue:
        s = queue.popleft()
        enqueued[s] = False
        r = residual[s]
        residual[s] = semiring.zero()
        for nxt, weight in edges[s]:
            w = semiring.times(r, weight)
            d = semiring.plus(distance[nxt], w)
            if not semiring.approx_equal(distance[nxt], d, delta):
                distance[nxt] = d
                residual[nxt] = semiring.plus(residual[nxt], w)
                if not enqueued[nxt]:
                    enqueued[nxt] = True
                    queue.append(nxt)
    return distance


def compute_likelihood(fst):
    """
    Total likelihood of an automaton: the negated cost of the sum, over all
    final states, of the shortest distance times the final weight. An
    automaton without start state has likelihood -inf.
    """
    if fst.start is None:
        return -np.inf
    semiring = fst.semiring
    distance = shortest_distance(fst)
    total = semiring.add([semiring.times(distance[s], weight) for s, weight in fst.finals()])
    return -semiring.value(total)
