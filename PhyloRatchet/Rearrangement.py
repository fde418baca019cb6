# Copyright (C) 2020 by Magda Grynkiewicz (magda.markowska@gmail.com)

"""Topology rearrangements: NNI, SPR and stepwise addition."""

import logging
from collections import namedtuple

import numpy as np

from PhyloRatchet import DegenerateInputError
from PhyloRatchet.CharacterMatrix import CharacterMatrix
from PhyloRatchet.Parsimony import FitchScorer
from PhyloRatchet.Topology import Topology

logger = logging.getLogger(__name__)


class NNIMove(namedtuple("NNIMove", ["edge", "swap"])):
    """Nearest-neighbour interchange across an internal edge.

    edge is (u, v), both internal. swap is (b, c) with b a neighbour of u
    and c a neighbour of v; the move exchanges the subtrees b and c.
    """

    __slots__ = ()

    def apply(self, topology):
        """Return the topology with the two subtrees exchanged."""
        (u, v), (b, c) = self.edge, self.swap
        adjacency = topology.adjacency
        if topology.is_leaf(u) or topology.is_leaf(v) or v not in adjacency[u]:
            raise ValueError(f"{self.edge} is not an internal edge!")
        if b == v or b not in adjacency[u] or c == u or c not in adjacency[v]:
            raise ValueError(f"{self.swap} can't be swapped across {self.edge}!")
        adjacency = list(adjacency)
        adjacency[u] = _replace(adjacency[u], b, c)
        adjacency[v] = _replace(adjacency[v], c, b)
        adjacency[b] = _replace(adjacency[b], u, v)
        adjacency[c] = _replace(adjacency[c], v, u)
        return Topology._shared(topology.labels, tuple(adjacency), topology.root)

    def reversed(self):
        """Return the move undoing this one on the rearranged topology."""
        b, c = self.swap
        return NNIMove(self.edge, (c, b))


class SPRMove(namedtuple("SPRMove", ["prune", "regraft"])):
    """Subtree pruning and regrafting.

    prune is (p, s): the subtree hanging from s is cut off its attachment
    node p (degree 3), whose other two neighbours get joined. regraft is the
    edge (x, y) of the remaining tree where p is reinserted with s.
    """

    __slots__ = ()

    def apply(self, topology):
        """Return the topology with the subtree moved, validated."""
        (p, s), (x, y) = self.prune, self.regraft
        adjacency = [list(neighbours) for neighbours in topology.adjacency]
        if topology.is_leaf(p) or len(adjacency[p]) != 3 or s not in adjacency[p]:
            raise ValueError(f"Can't prune {s} from node {p}!")
        a, b = (other for other in adjacency[p] if other != s)
        if {x, y} == {a, b}:
            raise ValueError("Regrafting on the pruning point gives the same tree!")
        if p in (x, y) or y not in adjacency[x]:
            raise ValueError(f"{self.regraft} is not an edge of the remaining tree!")
        adjacency[a][adjacency[a].index(p)] = b
        adjacency[b][adjacency[b].index(p)] = a
        adjacency[x][adjacency[x].index(y)] = p
        adjacency[y][adjacency[y].index(x)] = p
        adjacency[p] = [s, x, y]
        return Topology(topology.labels, adjacency, root=topology.root)


def _replace(neighbours, old, new):
    """Return neighbours with old replaced by new (PRIVATE)."""
    return tuple(new if other == old else other for other in neighbours)


def nni_moves(topology):
    """Yield every NNI move of topology.

    A binary internal edge gives the two classic neighbours. Edges touching
    a polytomy give one move per pair of exchangeable subtrees.
    """
    for u, v in topology.edges():
        if topology.is_leaf(v):
            continue
        side_u = [other for other in topology.neighbours(u) if other != v]
        side_v = [other for other in topology.neighbours(v) if other != u]
        if len(side_u) == 2 and len(side_v) == 2:
            side_u = side_u[:1]
        for b in side_u:
            for c in side_v:
                yield NNIMove((u, v), (b, c))


def spr_moves(topology):
    """Yield every SPR move of topology.

    For each degree-3 node p and neighbour s, the subtree behind s may be
    regrafted on every edge not inside it and not touching p. The edge
    joining p's other two neighbours is skipped since it rebuilds topology.
    """
    edges = topology.edges()
    for p in topology.internal_nodes():
        if len(topology.neighbours(p)) != 3:
            continue
        for s in topology.neighbours(p):
            cut = _subtree_nodes(topology, s, p)
            cut.add(p)
            for x, y in edges:
                if x in cut or y in cut:
                    continue
                yield SPRMove((p, s), (x, y))


def _subtree_nodes(topology, start, away_from):
    """Return nodes reachable from start without passing away_from (PRIVATE)."""
    seen = {start}
    stack = [start]
    while stack:
        for other in topology.neighbours(stack.pop()):
            if other != away_from and other not in seen:
                seen.add(other)
                stack.append(other)
    return seen


class Neighbourhood:
    """Lazy, finite and restartable sequence of rearranged topologies.

    Every iteration calls the move generator again and builds fresh
    topologies, so two iterations share no state. Moves whose result fails
    validation are logged and skipped.

    :Parameters:
        topology: Topology
            Topology to rearrange.
        move_generator: Callable[[Topology], Iterable]
            Function yielding NNIMove or SPRMove objects.
        unique: bool
            If True, a topology already produced in this iteration (or equal
            to the input) is not produced again.
    """

    def __init__(self, topology, move_generator, unique=False):
        """Init method for Neighbourhood."""
        if not isinstance(topology, Topology):
            raise TypeError("Must provide a Topology object.")
        self._topology = topology
        self._move_generator = move_generator
        self._unique = unique

    @property
    def topology(self):
        """Getter method for topology."""
        return self._topology

    def moves(self):
        """Yield (move, topology) pairs."""
        seen = {self._topology} if self._unique else None
        for move in self._move_generator(self._topology):
            try:
                candidate = move.apply(self._topology)
            except ValueError as err:
                logger.debug("Skipping %s: %s", move, err)
                continue
            if seen is not None:
                if candidate in seen:
                    continue
                seen.add(candidate)
            yield move, candidate

    def __iter__(self):
        for _, candidate in self.moves():
            yield candidate


def nni(topology):
    """Return the NNI neighbourhood of topology."""
    return Neighbourhood(topology, nni_moves)


def spr(topology):
    """Return the SPR neighbourhood of topology, without repeated topologies."""
    return Neighbourhood(topology, spr_moves, unique=True)


def random_addition(matrix, rng=None, scorer=None):
    """Build a topology by greedy stepwise addition in random order.

    Taxa are shuffled with rng. The first three form a star; each further
    taxon goes on the edge giving the lowest score over the taxa added so
    far, the first such edge in pre-order on ties. A fixed seed always gives
    the same topology.
    """
    if not isinstance(matrix, CharacterMatrix):
        raise TypeError("Must provide a CharacterMatrix object.")
    if matrix.taxon_count() < 3:
        raise DegenerateInputError(
            f"At least 3 taxa are needed for stepwise addition, got {matrix.taxon_count()}!"
        )
    scorer = scorer or FitchScorer()
    rng = np.random.default_rng(rng)
    order = [matrix.taxa[i] for i in rng.permutation(matrix.taxon_count())]
    topology = Topology.star(order[:3])
    for added, taxon in enumerate(order[3:], start=4):
        partial = matrix.subset(order[:added])
        best_score, best_topology = None, None
        for edge in topology.edges():
            candidate = topology.insert_leaf(taxon, edge)
            candidate_score = scorer.get_score(candidate, partial)
            if best_score is None or candidate_score < best_score:
                best_score, best_topology = candidate_score, candidate
        logger.debug("Added %s, partial score %s", taxon, best_score)
        topology = best_topology
    return topology
