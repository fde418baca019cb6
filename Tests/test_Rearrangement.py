# Copyright (C) 2020 by Magda Grynkiewicz (magda.markowska@gmail.com)

"""Unit tests for the PhyloRatchet.Rearrangement module."""

import unittest

import numpy as np

from PhyloRatchet import DegenerateInputError
from PhyloRatchet.CharacterMatrix import CharacterMatrix
from PhyloRatchet.Parsimony import score
from PhyloRatchet.Rearrangement import Neighbourhood
from PhyloRatchet.Rearrangement import NNIMove
from PhyloRatchet.Rearrangement import SPRMove
from PhyloRatchet.Rearrangement import nni
from PhyloRatchet.Rearrangement import nni_moves
from PhyloRatchet.Rearrangement import random_addition
from PhyloRatchet.Rearrangement import spr
from PhyloRatchet.Topology import Topology


def random_matrix(seed, taxa, sites=25):
    rng = np.random.default_rng(seed)
    return CharacterMatrix.load(
        {taxon: "".join(rng.choice(list("ACGT"), size=sites)) for taxon in taxa}
    )


class NNITest(unittest.TestCase):
    def test_neighbourhood_size(self):
        for n in range(4, 10):
            taxa = "ABCDEFGHI"[:n]
            tree = Topology.random(taxa, n)
            neighbours = list(nni(tree))
            with self.subTest(line=n):
                self.assertEqual(len(neighbours), 2 * (n - 3))
                self.assertEqual(len(set(neighbours)), 2 * (n - 3))
                self.assertNotIn(tree, neighbours)

    def test_one_split_changes(self):
        tree = Topology.random("ABCDEFGH", 5)
        for neighbour in nni(tree):
            with self.subTest(line=neighbour):
                self.assertTrue(neighbour.is_binary())
                self.assertEqual(neighbour.leaf_set, tree.leaf_set)
                self.assertEqual(len(tree.bipartitions() - neighbour.bipartitions()), 1)
                self.assertEqual(len(neighbour.bipartitions() - tree.bipartitions()), 1)

    def test_restartable(self):
        tree = Topology.random("ABCDEFG", 2)
        neighbourhood = nni(tree)
        self.assertEqual(list(neighbourhood), list(neighbourhood))
        self.assertIs(neighbourhood.topology, tree)

    def test_reverse_restores(self):
        tree = Topology.random("ABCDEFGH", 8)
        matrix = random_matrix(8, "ABCDEFGH")
        for move, candidate in nni(tree).moves():
            with self.subTest(line=move):
                restored = move.reversed().apply(candidate)
                self.assertEqual(restored, tree)
                self.assertEqual(score(restored, matrix), score(tree, matrix))

    def test_shares_untouched_nodes(self):
        tree = Topology.random("ABCDEFGH", 4)
        move, candidate = next(nni(tree).moves())
        (u, v), (b, c) = move
        touched = {u, v, b, c}
        for node in range(len(tree)):
            if node not in touched:
                self.assertIs(candidate.adjacency[node], tree.adjacency[node])

    def test_star_has_no_neighbours(self):
        self.assertEqual(list(nni(Topology.star("ABC"))), [])

    def test_polytomy(self):
        tree = Topology.from_newick("((A,B),C,D,E);")
        neighbours = set(nni(tree))
        # (A,B) can be swapped with any of C, D, E
        self.assertEqual(len(list(nni_moves(tree))), 6)
        self.assertGreaterEqual(len(neighbours), 3)
        for neighbour in neighbours:
            self.assertEqual(neighbour.leaf_set, frozenset("ABCDE"))

    def test_invalid_moves(self):
        tree = Topology.from_newick("((A,B),(C,D));")
        leaf = tree.leaves()[0]
        with self.assertRaises(ValueError):
            NNIMove((tree.neighbours(leaf)[0], leaf), (0, 0)).apply(tree)
        u, v = next(edge for edge in tree.edges() if not tree.is_leaf(edge[1]))
        with self.assertRaises(ValueError):
            NNIMove((u, v), (v, u)).apply(tree)


class SPRTest(unittest.TestCase):
    def test_neighbourhood_size(self):
        for n in range(4, 9):
            taxa = "ABCDEFGH"[:n]
            tree = Topology.random(taxa, n + 20)
            neighbours = list(spr(tree))
            with self.subTest(line=n):
                self.assertEqual(len(neighbours), 2 * (n - 3) * (2 * n - 7))
                self.assertEqual(len(set(neighbours)), len(neighbours))
                self.assertNotIn(tree, neighbours)

    def test_contains_nni(self):
        tree = Topology.random("ABCDEFG", 13)
        self.assertTrue(set(nni(tree)) <= set(spr(tree)))

    def test_valid_trees(self):
        tree = Topology.random("ABCDEFG", 17)
        for neighbour in spr(tree):
            self.assertTrue(neighbour.is_binary())
            self.assertEqual(neighbour.leaf_set, tree.leaf_set)
            self.assertEqual(len(neighbour), len(tree))

    def test_invalid_moves_are_skipped(self):
        tree = Topology.from_newick("((A,B),(C,D));")
        p = tree.parent(tree.leaves()[0])
        s = tree.leaves()[0]
        a, b = (other for other in tree.neighbours(p) if other != s)
        bad = SPRMove((p, s), (a, b))
        with self.assertRaises(ValueError):
            bad.apply(tree)
        with self.assertRaises(ValueError):
            SPRMove((s, p), (a, b)).apply(tree)

        def generator(topology):
            yield bad
            yield from nni_moves(topology)

        self.assertEqual(len(list(Neighbourhood(tree, generator))), 2)

    def test_type(self):
        with self.assertRaises(TypeError):
            spr("((A,B),(C,D));")


class RandomAdditionTest(unittest.TestCase):
    def setUp(self):
        self.matrix = random_matrix(42, "ABCDEF")

    def test_seeded(self):
        first = random_addition(self.matrix, 5)
        self.assertEqual(first, random_addition(self.matrix, 5))
        self.assertEqual(first.leaf_set, frozenset("ABCDEF"))
        self.assertTrue(first.is_binary())

    def test_greedy_is_no_worse_than_random(self):
        built = random_addition(self.matrix, np.random.default_rng(3))
        random_scores = [
            score(Topology.random("ABCDEF", seed), self.matrix) for seed in range(20)
        ]
        self.assertLessEqual(score(built, self.matrix), max(random_scores))

    def test_errors(self):
        with self.assertRaises(DegenerateInputError):
            random_addition(CharacterMatrix.load({"A": "AC", "B": "AG"}))
        with self.assertRaises(TypeError):
            random_addition({"A": "AC", "B": "AG", "C": "AT"})


if __name__ == "__main__":
    runner = unittest.TextTestRunner(verbosity=2)
    unittest.main(testRunner=runner)
