# Copyright (C) 2020 by Stanislaw Antonowicz (stas.antonowicz@gmail.com)

"""Classes and methods for parsimony scoring of topologies."""

import math
from collections.abc import Mapping, Sequence
from itertools import combinations, permutations

import numpy as np

from PhyloRatchet import TopologyMismatchError
from PhyloRatchet.CharacterMatrix import CharacterMatrix
from PhyloRatchet.Topology import Topology


class ParsimonyScorer:
    """Base class for parsimony scorers.

    Subclasses compute unweighted per-site minimum costs; the score of a
    topology is their sum weighted by the matrix site weights.
    """

    def get_score(self, topology, matrix):
        """Return the weighted parsimony score of topology for matrix.

        Raises TopologyMismatchError if leaves and taxa differ.
        """
        costs = self.site_scores(topology, matrix)
        total = (costs * matrix.weights).sum()
        if np.issubdtype(costs.dtype, np.integer):
            return int(total)
        return float(total)

    def site_scores(self, topology, matrix):
        """Return the unweighted minimum cost of every site as a numpy array."""
        self._validate_input(topology, matrix)
        return self._site_scores(topology, matrix)

    def _site_scores(self, topology, matrix):
        """Compute per-site costs of valid input (PRIVATE).

        This should be implemented in a subclass.
        """
        raise NotImplementedError("Method not implemented!")

    @staticmethod
    def _validate_input(topology, matrix):
        """Check types and that leaf set and taxon set match (PRIVATE)."""
        if not isinstance(topology, Topology):
            raise TypeError("Must provide a Topology object.")
        if not isinstance(matrix, CharacterMatrix):
            raise TypeError("Must provide a CharacterMatrix object.")
        taxa = set(matrix.taxa)
        leaves_minus_taxa = topology.leaf_set - taxa
        taxa_minus_leaves = taxa - topology.leaf_set
        if leaves_minus_taxa:
            raise TopologyMismatchError(
                f"topology has leaves missing from the matrix: {sorted(leaves_minus_taxa)}"
            )
        if taxa_minus_leaves:
            raise TopologyMismatchError(
                f"matrix has taxa missing from the topology: {sorted(taxa_minus_leaves)}"
            )


class SankoffScorer(ParsimonyScorer):
    """A class representing Sankoff parsimony with a state-change cost table.

    Exact for multifurcations and ambiguous states. Root placement does not
    change the score because the cost table must be symmetric.

    :Parameters:
        cost_matrix: Dict[Tuple[str, str], float] or Sequence[float]
            Cost of changing one state into another. Either the full
            dictionary (both (s1, s2) and (s2, s1) with equal values) or a
            sequence with one value per combinations(states, 2), position-wise.
            Default: unit cost for every change.

    Examples
    --------
    >>> from PhyloRatchet.CharacterMatrix import CharacterMatrix
    >>> from PhyloRatchet.Parsimony import SankoffScorer
    >>> from PhyloRatchet.Topology import Topology
    >>> matrix = CharacterMatrix.load({"A": "A", "B": "A", "C": "G", "D": "C"})
    >>> tree = Topology.from_newick("((A,B),(C,D));")
    >>> SankoffScorer().get_score(tree, matrix)
    2
    >>> transitions = SankoffScorer([2, 1, 2, 2, 1, 2])  # A<->G, C<->T cheaper
    >>> transitions.get_score(tree, matrix)
    3

    """

    def __init__(self, cost_matrix=None):
        """Initialize the class, validate cost_matrix."""
        self._cost_matrix = self._validate_cost_matrix(cost_matrix)
        self._cost_arrays = {}

    @property
    def cost_matrix(self):
        """Getter method for cost_matrix."""
        return self._cost_matrix

    def _site_scores(self, topology, matrix):
        """Run the Sankoff pass vectorised over sites (PRIVATE)."""
        cost = self._cost_array(matrix.states)
        states = len(matrix.states)
        bits = np.uint32(1) << np.arange(states, dtype=np.uint32)
        labels = topology.labels
        vectors = {}
        for node, parent in topology.traverse():
            if labels[node] is not None:
                codes = matrix.codes[matrix.index(labels[node])]
                vectors[node] = np.where((codes[:, None] & bits) != 0, 0.0, np.inf)
                continue
            total = np.zeros((matrix.site_count(), states))
            for other in topology.neighbours(node):
                if other != parent:
                    child = vectors.pop(other)
                    total += (child[:, None, :] + cost[None, :, :]).min(axis=2)
            vectors[node] = total
        costs = vectors[topology.root].min(axis=1)
        if np.all(cost == np.rint(cost)):
            return np.rint(costs).astype(np.int64)
        return costs

    def _cost_array(self, states):
        """Return the cost table as a states x states array (PRIVATE)."""
        if states not in self._cost_arrays:
            size = len(states)
            if self._cost_matrix is None:
                array = 1.0 - np.eye(size)
            elif isinstance(self._cost_matrix, Mapping):
                array = np.zeros((size, size))
                for (i, sym1), (j, sym2) in permutations(enumerate(states), 2):
                    try:
                        array[i, j] = self._cost_matrix[(sym1, sym2)]
                    except KeyError:
                        raise ValueError(
                            f"cost_matrix has no cost for {sym1}->{sym2}!"
                        ) from None
            else:
                if math.comb(size, 2) != len(self._cost_matrix):
                    raise ValueError(
                        f"Wrong number of costs for {size} states in cost_matrix!"
                    )
                array = np.zeros((size, size))
                for value, (i, j) in zip(self._cost_matrix, combinations(range(size), 2)):
                    array[i, j] = array[j, i] = value
            self._cost_arrays[states] = array
        return self._cost_arrays[states]

    @staticmethod
    def _validate_cost_matrix(cost_matrix):
        """Check cost_matrix is symmetric and non-negative (PRIVATE)."""
        if cost_matrix is None:
            return None
        if isinstance(cost_matrix, Mapping):
            for (sym1, sym2), cost in cost_matrix.items():
                if cost < 0:
                    raise ValueError("cost_matrix values have to be non-negative!")
                if sym1 == sym2:
                    if cost != 0:
                        raise ValueError("cost_matrix diagonal has to be zero!")
                elif (sym2, sym1) not in cost_matrix or not math.isclose(
                    cost, cost_matrix[(sym2, sym1)]
                ):
                    raise ValueError(
                        "Wrong cost_matrix dict, costs have to be symmetric."
                    )
            return dict(cost_matrix)
        if isinstance(cost_matrix, Sequence) and not isinstance(cost_matrix, str):
            if any(cost < 0 for cost in cost_matrix):
                raise ValueError("cost_matrix values have to be non-negative!")
            return list(cost_matrix)
        raise ValueError("Can't interpret cost_matrix as a dict or sequence of values!")


class FitchScorer(ParsimonyScorer):
    """A class representing Fitch parsimony for unordered characters.

    Post-order pass over state-set bitmasks: a node takes the intersection of
    its children's sets if it is non-empty, otherwise their union at the cost
    of one change. The degree-3 traversal root is folded pairwise, which is
    the same as rooting on one of its edges, so re-rooting never changes the
    score. Topologies with polytomies are scored by unit-cost Sankoff, which
    is exact for multifurcations.

    Examples
    --------
    >>> from PhyloRatchet.CharacterMatrix import CharacterMatrix
    >>> from PhyloRatchet.Parsimony import FitchScorer
    >>> from PhyloRatchet.Topology import Topology
    >>> matrix = CharacterMatrix.load({"A": "AC", "B": "AC", "C": "GC", "D": "GT"})
    >>> FitchScorer().get_score(Topology.from_newick("((A,B),(C,D));"), matrix)
    2
    >>> FitchScorer().get_score(Topology.from_newick("((A,C),(B,D));"), matrix)
    3

    """

    def __init__(self):
        """Initialize the class."""
        self._multifurcating = SankoffScorer()

    def _site_scores(self, topology, matrix):
        """Run the Fitch pass vectorised over sites (PRIVATE)."""
        if not topology.is_binary():
            return self._multifurcating._site_scores(topology, matrix)
        labels = topology.labels
        codes = matrix.codes
        sets = {}
        costs = np.zeros(matrix.site_count(), dtype=np.int64)
        for node, parent in topology.traverse():
            if labels[node] is not None:
                sets[node] = codes[matrix.index(labels[node])]
                continue
            children = [
                sets.pop(other) for other in topology.neighbours(node) if other != parent
            ]
            state = children[0]
            for child in children[1:]:
                common = state & child
                empty = common == 0
                costs += empty
                state = np.where(empty, state | child, common)
            sets[node] = state
        return costs


_DEFAULT_SCORER = FitchScorer()


def score(topology, matrix):
    """Return the Fitch parsimony score of topology for matrix."""
    return _DEFAULT_SCORER.get_score(topology, matrix)
