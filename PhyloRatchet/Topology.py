# Copyright (C) 2020 by Magda Grynkiewicz (magda.markowska@gmail.com)

"""Unrooted tree topologies stored as an arena of nodes."""

import logging
from io import StringIO

import numpy as np
from Bio import Phylo
from Bio.Phylo import BaseTree

from PhyloRatchet import DegenerateInputError

logger = logging.getLogger(__name__)


def canonical_split(side, taxa):
    """Return the canonical side of the bipartition side | taxa - side.

    The canonical side is the smaller one. On a tie it is the side without
    the smallest taxon label.
    """
    side = frozenset(side)
    other = frozenset(taxa) - side
    if len(side) != len(other):
        return side if len(side) < len(other) else other
    return other if min(taxa) in side else side


class Topology:
    """An unrooted tree over labelled leaves.

    Nodes are addressed by index. Node i has labels[i] (None for internal
    nodes) and the tuple adjacency[i] of its neighbours. One internal node
    serves as traversal root; it has no biological meaning and reroot()
    only moves it. Instances are immutable and derived topologies share the
    unchanged neighbour tuples of their parent.

    :Parameters:
        labels: Sequence[Optional[str]]
            Leaf label per node, None for internal nodes.
        adjacency: Sequence[Sequence[int]]
            Neighbour indices per node.
        root: int
            Internal node used as traversal root. Default: first internal node.

    Examples
    --------
    >>> from PhyloRatchet.Topology import Topology
    >>> tree = Topology.from_newick("((A,B),(C,D));")
    >>> sorted(tree.leaf_set)
    ['A', 'B', 'C', 'D']
    >>> sorted(sorted(split) for split in tree.bipartitions())
    [['C', 'D']]

    """

    def __init__(self, labels, adjacency, root=None):
        """Init method for Topology, checks the tree invariants."""
        self._labels = tuple(labels)
        self._adjacency = tuple(tuple(neighbours) for neighbours in adjacency)
        self._validate_tree(self._labels, self._adjacency)
        if root is None:
            root = next(i for i, label in enumerate(self._labels) if label is None)
        elif self._labels[root] is not None:
            raise ValueError("root must be an internal node!")
        self._root = root
        self._leaf_set = frozenset(label for label in self._labels if label is not None)
        self._postorder = None
        self._parents = None
        self._bipartitions = None

    @classmethod
    def _shared(cls, labels, adjacency, root):
        """Build a topology from tuples that are already valid (PRIVATE)."""
        topology = cls.__new__(cls)
        topology._labels = labels
        topology._adjacency = adjacency
        topology._root = root
        topology._leaf_set = frozenset(label for label in labels if label is not None)
        topology._postorder = None
        topology._parents = None
        topology._bipartitions = None
        return topology

    @classmethod
    def star(cls, taxa):
        """Return the star topology over taxa (one internal node)."""
        taxa = list(taxa)
        labels = [None] + taxa
        adjacency = [range(1, len(taxa) + 1)] + [(0,)] * len(taxa)
        return cls(labels, adjacency)

    @classmethod
    def random(cls, taxa, rng=None):
        """Return a random binary topology built by random stepwise addition."""
        rng = np.random.default_rng(rng)
        taxa = list(taxa)
        if len(taxa) < 3:
            raise DegenerateInputError("At least 3 taxa are needed for a topology!")
        order = [taxa[i] for i in rng.permutation(len(taxa))]
        topology = cls.star(order[:3])
        for taxon in order[3:]:
            edges = topology.edges()
            topology = topology.insert_leaf(taxon, edges[rng.integers(len(edges))])
        return topology

    @classmethod
    def from_tree(cls, tree):
        """Convert a Bio.Phylo tree, suppressing degree-2 nodes like a bifurcating root."""
        labels = []
        adjacency = []
        stack = [(tree.root, None)]
        while stack:
            clade, parent = stack.pop()
            if clade.is_terminal():
                if not clade.name:
                    raise ValueError("Every terminal clade needs a name!")
                labels.append(clade.name)
            else:
                labels.append(None)
            adjacency.append([])
            node = len(labels) - 1
            if parent is not None:
                adjacency[node].append(parent)
                adjacency[parent].append(node)
            for child in reversed(clade.clades):
                stack.append((child, node))
        labels, adjacency = cls._suppress_unbranched(labels, adjacency)
        return cls(labels, adjacency)

    @classmethod
    def from_newick(cls, text):
        """Parse a Newick string with Bio.Phylo."""
        return cls.from_tree(Phylo.read(StringIO(text), "newick"))

    def __eq__(self, other):
        if not isinstance(other, Topology):
            return NotImplemented
        return (
            self._leaf_set == other._leaf_set
            and self.bipartitions() == other.bipartitions()
        )

    def __hash__(self):
        return hash((self._leaf_set, self.bipartitions()))

    def __repr__(self):
        return f"Topology({self.to_newick(plain=True)!r})"

    @property
    def labels(self):
        """Getter method for labels, one per node."""
        return self._labels

    @property
    def adjacency(self):
        """Getter method for adjacency, neighbour tuple per node."""
        return self._adjacency

    @property
    def root(self):
        """Getter method for root (traversal root)."""
        return self._root

    @property
    def leaf_set(self):
        """Getter method for leaf_set, frozenset of leaf labels."""
        return self._leaf_set

    def __len__(self):
        return len(self._labels)

    def label(self, node):
        """Return label of node, None for internal nodes."""
        return self._labels[node]

    def neighbours(self, node):
        """Return neighbour indices of node."""
        return self._adjacency[node]

    def is_leaf(self, node):
        """Return True if node is a leaf."""
        return self._labels[node] is not None

    def leaves(self):
        """Return indices of the leaves."""
        return [i for i, label in enumerate(self._labels) if label is not None]

    def internal_nodes(self):
        """Return indices of the internal nodes."""
        return [i for i, label in enumerate(self._labels) if label is None]

    def is_binary(self):
        """Return True if every internal node has degree 3."""
        return all(
            len(self._adjacency[node]) == 3 for node in self.internal_nodes()
        )

    def traverse(self):
        """Return (node, parent) pairs ordered so children precede parents."""
        if self._postorder is None:
            order = []
            stack = [(self._root, None)]
            while stack:
                node, parent = stack.pop()
                order.append((node, parent))
                for other in reversed(self._adjacency[node]):
                    if other != parent:
                        stack.append((other, node))
            order.reverse()
            self._postorder = tuple(order)
        return self._postorder

    def edges(self):
        """Return (parent, child) pairs in pre-order from the traversal root."""
        return [
            (parent, node)
            for node, parent in reversed(self.traverse())
            if parent is not None
        ]

    def parent(self, node):
        """Return parent of node relative to the traversal root (None for root)."""
        if self._parents is None:
            self._parents = dict(self.traverse())
        return self._parents[node]

    def children(self, node):
        """Return children of node relative to the traversal root."""
        parent = self.parent(node)
        return tuple(other for other in self._adjacency[node] if other != parent)

    def reroot(self, node):
        """Return the same topology traversed from another internal node."""
        if self._labels[node] is not None:
            raise ValueError("Can only reroot on an internal node!")
        return self._shared(self._labels, self._adjacency, node)

    def clades(self):
        """Return {node: frozenset of leaf labels below node} for the traversal root."""
        below = {}
        for node, parent in self.traverse():
            if self._labels[node] is not None:
                below[node] = frozenset((self._labels[node],))
            else:
                below[node] = frozenset().union(
                    *(below[other] for other in self._adjacency[node] if other != parent)
                )
        return below

    def bipartitions(self):
        """Return the non-trivial splits as a frozenset of canonical sides."""
        if self._bipartitions is None:
            splits = set()
            below = self.clades()
            for parent, child in self.edges():
                if self._labels[child] is None:
                    side = below[child]
                    if 2 <= len(side) <= len(self._leaf_set) - 2:
                        splits.add(canonical_split(side, self._leaf_set))
            self._bipartitions = frozenset(splits)
        return self._bipartitions

    def insert_leaf(self, label, edge):
        """Return a topology with a new leaf attached in the middle of edge."""
        if label in self._leaf_set:
            raise ValueError(f"Leaf {label!r} is already in the topology!")
        u, v = edge
        if v not in self._adjacency[u]:
            raise ValueError(f"{edge} is not an edge!")
        inner = len(self._labels)
        leaf = inner + 1
        adjacency = list(self._adjacency)
        adjacency[u] = tuple(inner if other == v else other for other in adjacency[u])
        adjacency[v] = tuple(inner if other == u else other for other in adjacency[v])
        adjacency.append((u, v, leaf))
        adjacency.append((inner,))
        return self._shared(self._labels + (None, label), tuple(adjacency), self._root)

    def to_tree(self, supports=None):
        """Return a Bio.Phylo tree, optionally with support as clade confidence.

        supports maps canonical bipartitions to a value, e.g. the output of
        BranchSupportTally.support.
        """
        clades = {}
        for node, _ in self.traverse():
            clades[node] = BaseTree.Clade(name=self._labels[node])
        for parent, child in self.edges():
            clades[parent].clades.append(clades[child])
        if supports:
            below = self.clades()
            for _, child in self.edges():
                if self._labels[child] is None:
                    split = canonical_split(below[child], self._leaf_set)
                    clades[child].confidence = supports.get(split)
        return BaseTree.Tree(root=clades[self._root], rooted=False)

    def to_newick(self, supports=None, **kwargs):
        """Return the topology as a Newick string written by Bio.Phylo."""
        handle = StringIO()
        Phylo.write(self.to_tree(supports), handle, "newick", **kwargs)
        return handle.getvalue().strip()

    @staticmethod
    def _suppress_unbranched(labels, adjacency):
        """Drop internal nodes of degree below 3 and renumber (PRIVATE)."""
        alive = set(range(len(labels)))
        changed = True
        while changed:
            changed = False
            for node in sorted(alive):
                if labels[node] is not None or len(adjacency[node]) > 2:
                    continue
                neighbours = adjacency[node]
                for other in neighbours:
                    adjacency[other].remove(node)
                if len(neighbours) == 2:
                    a, b = neighbours
                    adjacency[a].append(b)
                    adjacency[b].append(a)
                adjacency[node] = []
                alive.discard(node)
                changed = True
        order = sorted(alive)
        renumber = {old: new for new, old in enumerate(order)}
        return (
            [labels[old] for old in order],
            [[renumber[other] for other in adjacency[old]] for old in order],
        )

    @staticmethod
    def _validate_tree(labels, adjacency):
        """Check leaf/internal degrees, unique labels and that it is a tree (PRIVATE)."""
        if len(labels) != len(adjacency):
            raise ValueError("labels and adjacency must have the same length!")
        leaves = [label for label in labels if label is not None]
        if len(leaves) < 3:
            raise DegenerateInputError(
                f"At least 3 leaves are needed for an unrooted topology, got {len(leaves)}!"
            )
        if len(set(leaves)) != len(leaves):
            raise ValueError("Leaf labels must be unique!")
        edge_count = 0
        for node, neighbours in enumerate(adjacency):
            if labels[node] is not None and len(neighbours) != 1:
                raise ValueError(f"Leaf {labels[node]!r} must have exactly one neighbour!")
            if labels[node] is None and len(neighbours) < 3:
                raise ValueError(f"Internal node {node} must have degree of at least 3!")
            if len(set(neighbours)) != len(neighbours) or node in neighbours:
                raise ValueError(f"Node {node} has repeated or self neighbours!")
            for other in neighbours:
                if not 0 <= other < len(labels) or node not in adjacency[other]:
                    raise ValueError(f"Edge {node}-{other} is not symmetric!")
            edge_count += len(neighbours)
        if edge_count // 2 != len(labels) - 1:
            raise ValueError("Topology must be a tree (nodes - 1 edges)!")
        seen = {0}
        stack = [0]
        while stack:
            for other in adjacency[stack.pop()]:
                if other not in seen:
                    seen.add(other)
                    stack.append(other)
        if len(seen) != len(labels):
            raise ValueError("Topology must be connected!")
