from functools import reduce
import math

import numpy as np
from scipy.special import logsumexp


class Semiring(object):
    """Abstract class defining components of a semiring.

    Weights are costs (lower is more likely) and are plain immutable values,
    so they can be shared freely between automata.
    """

    name = None

    def plus(self, a, b):
        """Addition of two elements in the semiring."""
        raise NotImplementedError

    def times(self, a, b):
        """Multiplication of two elements in the semiring."""
        raise NotImplementedError

    def add(self, summands):
        """Addition of the given elements in the semiring."""
        return reduce(self.plus, summands, self.zero())

    def multiply(self, multiplicants):
        """Multiplication of the given elements in the semiring."""
        return reduce(self.times, multiplicants, self.one())

    def one(self):
        """Returns the neutral element w.r.t multiplication."""
        raise NotImplementedError

    def zero(self):
        """Returns the neutral element w.r.t to addition."""
        raise NotImplementedError

    def value(self, w):
        """Returns the scalar cost of a weight."""
        return float(w)

    def from_value(self, x):
        """Returns the weight with the given scalar cost."""
        return float(x)

    def is_zero(self, w):
        return w == self.zero()

    def approx_equal(self, a, b, delta=1e-6):
        if a == b:
            return True
        return abs(self.value(a) - self.value(b)) <= delta

    def __repr__(self):
        return f"{type(self).__name__}()"

    def __eq__(self, other):
        return type(self) is type(other)

    def __hash__(self):
        return hash(type(self))


class TropicalSemiring(Semiring):
    """
    Implements the tropical semiring, in which the shortest distance
    realizes the Viterbi approximation.
    """

    name = "tropical"

    def plus(self, a, b):
        return a if a <= b else b

    def times(self, a, b):
        return a + b

    def add(self, summands):
        return min(summands, default=self.zero())

    def multiply(self, multiplicants):
        return float(sum(multiplicants))

    def one(self):
        return 0.0

    def zero(self):
        return np.inf


class LogSemiring(Semiring):
    """
    Implements the log semiring over costs (negated log probabilities), in
    which the shortest distance sums the probability of all paths.
    """

    name = "log"

    def plus(self, a, b):
        # logaddexp(-inf, -inf) is -inf, so two zeros stay zero.
        return float(-np.logaddexp(-a, -b))

    def times(self, a, b):
        return a + b

    def add(self, summands):
        summands = np.asarray(list(summands), dtype=float)
        if summands.size == 0 or np.all(np.isinf(summands) & (summands > 0)):
            return self.zero()
        return float(-logsumexp(-summands))

    def multiply(self, multiplicants):
        return float(sum(multiplicants))

    def one(self):
        return 0.0

    def zero(self):
        return np.inf


class LatticeSemiring(Semiring):
    """
    Two-stream lattice weights: (graph cost, acoustic cost) pairs.

    Multiplication adds the two streams separately, addition keeps the
    operand with the lowest total cost, so the semiring behaves like the
    tropical semiring on the sum of the streams while remembering how that
    sum splits.
    """

    name = "lattice"

    def plus(self, a, b):
        sa = a[0] + a[1]
        sb = b[0] + b[1]
        if sa < sb:
            return a
        if sb < sa:
            return b
        return b if b[0] < a[0] else a

    def times(self, a, b):
        return (a[0] + b[0], a[1] + b[1])

    def one(self):
        return (0.0, 0.0)

    def zero(self):
        return (np.inf, np.inf)

    def value(self, w):
        return float(w[0] + w[1])

    def from_value(self, x):
        return (float(x), 0.0)

    def is_zero(self, w):
        # Any pair with an infinite stream is unreachable.
        return math.isinf(w[0]) or math.isinf(w[1])


def semiring_for(use_log):
    """Returns the semiring used for scoring."""
    return LogSemiring() if use_log else TropicalSemiring()
