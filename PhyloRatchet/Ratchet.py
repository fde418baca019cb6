# Copyright (C) 2020 by Magda Grynkiewicz (magda.markowska@gmail.com)

"""Classes and methods for parsimony tree search and the parsimony ratchet."""

import logging
from collections import namedtuple

import numpy as np
from Bio.Phylo.TreeConstruction import DistanceCalculator
from Bio.Phylo.TreeConstruction import DistanceTreeConstructor

from PhyloRatchet import SearchNotConvergedError
from PhyloRatchet.CharacterMatrix import CharacterMatrix
from PhyloRatchet.Parsimony import FitchScorer
from PhyloRatchet.Parsimony import ParsimonyScorer
from PhyloRatchet.Rearrangement import nni
from PhyloRatchet.Rearrangement import random_addition
from PhyloRatchet.Rearrangement import spr
from PhyloRatchet.Topology import Topology

logger = logging.getLogger(__name__)

_NEIGHBOURHOODS = {
    "nni": (nni,),
    "spr": (spr,),
    "both": (nni, spr),
}

_STARTS = ("random_addition", "random", "nj", "upgma")


def distance_topology(matrix, method="nj"):
    """Return an NJ or UPGMA topology from identity distances, using Bio.Phylo."""
    if method not in ("nj", "upgma"):
        raise ValueError("method must be 'nj' or 'upgma'!")
    calculator = DistanceCalculator("identity")
    distance_matrix = calculator.get_distance(matrix.to_alignment())
    constructor = DistanceTreeConstructor()
    if method == "nj":
        tree = constructor.nj(distance_matrix)
    else:
        tree = constructor.upgma(distance_matrix)
    return Topology.from_tree(tree)


def starting_topology(matrix, start="random_addition", rng=None, scorer=None):
    """Return the initial topology of a search.

    start is a Topology or one of "random_addition", "random", "nj", "upgma".
    """
    if isinstance(start, Topology):
        return start
    if start == "random_addition":
        return random_addition(matrix, rng, scorer)
    if start == "random":
        return Topology.random(matrix.taxa, rng)
    if start in ("nj", "upgma"):
        return distance_topology(matrix, start)
    raise ValueError(f"start must be a Topology or one of {_STARTS}!")


class ParsimonyTreeSearcher:
    """Best-improvement hill climbing over a rearrangement neighbourhood.

    :Parameters:
        scorer: ParsimonyScorer
            Default: FitchScorer().
        rearrangement: str
            "nni", "spr" or "both" (NNI first, SPR when NNI is stuck).
            Default: "spr".
        max_rounds: int
            Upper bound on accepted moves per search. Default: 10000.

    Examples
    --------
    >>> from PhyloRatchet.Ratchet import ParsimonyTreeSearcher
    >>> searcher = ParsimonyTreeSearcher(rearrangement="nni")
    >>> topology, score = searcher.search(start_topology, matrix)  # doctest: +SKIP

    """

    def __init__(self, scorer=None, rearrangement="spr", max_rounds=10000):
        """Init method for ParsimonyTreeSearcher."""
        self._scorer = self._validate_scorer(scorer or FitchScorer())
        self._rearrangement = self._validate_rearrangement(rearrangement)
        self._max_rounds = _validate_positive_int(max_rounds, "max_rounds")

    @property
    def scorer(self):
        """Getter method for scorer."""
        return self._scorer

    @property
    def rearrangement(self):
        """Getter method for rearrangement."""
        return self._rearrangement

    @rearrangement.setter
    def rearrangement(self, value):
        """Setter method for rearrangement."""
        self._rearrangement = self._validate_rearrangement(value)

    def search(self, topology, matrix):
        """Return (topology, score) once no rearrangement strictly improves the score."""
        current = topology
        current_score = self._scorer.get_score(current, matrix)
        for round_no in range(self._max_rounds):
            improved = False
            for neighbourhood in _NEIGHBOURHOODS[self._rearrangement]:
                best, best_score = None, current_score
                for candidate in neighbourhood(current):
                    candidate_score = self._scorer.get_score(candidate, matrix)
                    if candidate_score < best_score:
                        best, best_score = candidate, candidate_score
                if best is not None:
                    current, current_score = best, best_score
                    improved = True
                    break
            if not improved:
                break
            logger.debug("Round %d: score %s", round_no + 1, current_score)
        else:
            logger.warning("Local search stopped after %d rounds", self._max_rounds)
        return current, current_score

    @staticmethod
    def _validate_scorer(scorer):
        """Check scorer is a ParsimonyScorer (PRIVATE)."""
        if not isinstance(scorer, ParsimonyScorer):
            raise TypeError("scorer must be a ParsimonyScorer object!")
        return scorer

    @staticmethod
    def _validate_rearrangement(rearrangement):
        """Check rearrangement names a known neighbourhood (PRIVATE)."""
        if rearrangement not in _NEIGHBOURHOODS:
            raise ValueError(
                f"rearrangement must be one of {sorted(_NEIGHBOURHOODS)}!"
            )
        return rearrangement


class ParsimonyTreeConstructor:
    """Build one tree: starting topology followed by local search.

    :Parameters:
        searcher: ParsimonyTreeSearcher
            Default: ParsimonyTreeSearcher().
        start: Topology or str
            See starting_topology. Default: "random_addition".
    """

    def __init__(self, searcher=None, start="random_addition"):
        """Init method for ParsimonyTreeConstructor."""
        self.searcher = searcher or ParsimonyTreeSearcher()
        self.start = start

    def build_tree(self, matrix, rng=None):
        """Return the locally optimal topology for matrix."""
        rng = np.random.default_rng(rng)
        topology = starting_topology(matrix, self.start, rng, self.searcher.scorer)
        return self.searcher.search(topology, matrix)[0]

    def __call__(self, matrix, rng=None):
        return self.build_tree(matrix, rng)


class RatchetResult(
    namedtuple(
        "RatchetResult",
        ["topology", "score", "iterations", "converged", "trace", "accepted"],
    )
):
    """Outcome of a ratchet search.

    trace holds the best score after the initial search and after every
    iteration; it never increases. converged is False when the search hit
    max_iterations before minit iterations in a row brought no improvement.
    """

    __slots__ = ()

    def check_convergence(self):
        """Return self, or raise SearchNotConvergedError if the cap was hit."""
        if not self.converged:
            raise SearchNotConvergedError(
                f"Ratchet hit its cap of {self.iterations} iterations "
                f"(best score {self.score})."
            )
        return self


class ParsimonyRatchet:
    """A class representing the parsimony ratchet.

    Each iteration reweights a random subset of sites, runs local search
    from the current best topology under those weights and re-scores the
    result with the original weights. A re-scored topology at least as good
    as the best replaces it, so on ties the newer topology wins.

    :Parameters:
        searcher: ParsimonyTreeSearcher
            Local search used for every reoptimisation.
            Default: ParsimonyTreeSearcher() (SPR, Fitch).
        perturb_fraction: float
            Share of sites reweighted per iteration, in (0, 1]. Default: 0.25.
        perturb_factor: int
            Weight multiplier for the chosen sites, at least 2. Default: 2.
        minit: int
            Stop after this many iterations in a row without a strictly
            better score. Default: 10.
        max_iterations: int
            Hard cap on iterations. Default: 100.
        polish: bool
            If True, search again under the original weights after each
            perturbed search. Default: False.

    Examples
    --------
    >>> from PhyloRatchet.CharacterMatrix import CharacterMatrix
    >>> from PhyloRatchet.Ratchet import ParsimonyRatchet
    >>> matrix = CharacterMatrix.read("msa.phy", "phylip")  # doctest: +SKIP
    >>> result = ParsimonyRatchet(minit=5).search(matrix, rng=42)  # doctest: +SKIP
    >>> result.converged  # doctest: +SKIP
    True

    """

    def __init__(
        self,
        searcher=None,
        perturb_fraction=0.25,
        perturb_factor=2,
        minit=10,
        max_iterations=100,
        polish=False,
    ):
        """Init method for ParsimonyRatchet."""
        self._searcher = searcher or ParsimonyTreeSearcher()
        self._perturb_fraction = self._validate_perturb_fraction(perturb_fraction)
        self._perturb_factor = self._validate_perturb_factor(perturb_factor)
        self._minit = _validate_positive_int(minit, "minit")
        self._max_iterations = _validate_positive_int(max_iterations, "max_iterations")
        self.polish = bool(polish)

    @property
    def searcher(self):
        """Getter method for searcher."""
        return self._searcher

    @property
    def perturb_fraction(self):
        """Getter method for perturb_fraction."""
        return self._perturb_fraction

    @perturb_fraction.setter
    def perturb_fraction(self, value):
        """Setter method for perturb_fraction."""
        self._perturb_fraction = self._validate_perturb_fraction(value)

    @property
    def perturb_factor(self):
        """Getter method for perturb_factor."""
        return self._perturb_factor

    @perturb_factor.setter
    def perturb_factor(self, value):
        """Setter method for perturb_factor."""
        self._perturb_factor = self._validate_perturb_factor(value)

    @property
    def minit(self):
        """Getter method for minit."""
        return self._minit

    @minit.setter
    def minit(self, value):
        """Setter method for minit."""
        self._minit = _validate_positive_int(value, "minit")

    @property
    def max_iterations(self):
        """Getter method for max_iterations."""
        return self._max_iterations

    @max_iterations.setter
    def max_iterations(self, value):
        """Setter method for max_iterations."""
        self._max_iterations = _validate_positive_int(value, "max_iterations")

    def search(self, matrix, rng=None, start="random_addition"):
        """Run the ratchet and return a RatchetResult.

        1. Init: build the start topology (see starting_topology) and
           optimise it under the original weights.
        2. Perturb: multiply the weight of a random site subset.
        3. Reoptimize: local search under the perturbed weights, re-score
           under the original ones (search again if polish).
        4. Accept if the score is <= the best one, newer topology on ties.
        5. Stop after minit iterations without improvement or at
           max_iterations, whichever comes first.
        """
        if not isinstance(matrix, CharacterMatrix):
            raise TypeError("Arg matrix must be a CharacterMatrix object!")
        rng = np.random.default_rng(rng)
        scorer = self._searcher.scorer

        initial = starting_topology(matrix, start, rng, scorer)
        best, best_score = self._searcher.search(initial, matrix)
        trace = [best_score]
        logger.info("Ratchet start score %s", best_score)

        iterations = 0
        accepted = 0
        stale = 0
        while stale < self._minit and iterations < self._max_iterations:
            iterations += 1
            perturbed = self._perturb(matrix, rng)
            candidate, _ = self._searcher.search(best, perturbed)
            if self.polish:
                candidate, candidate_score = self._searcher.search(candidate, matrix)
            else:
                candidate_score = scorer.get_score(candidate, matrix)

            if candidate_score < best_score:
                stale = 0
            else:
                stale += 1
            if candidate_score <= best_score:
                best, best_score = candidate, candidate_score
                accepted += 1
            trace.append(best_score)
            logger.info(
                "Ratchet iteration %d: candidate %s, best %s",
                iterations,
                candidate_score,
                best_score,
            )

        converged = stale >= self._minit
        if not converged:
            logger.warning(
                "Ratchet stopped at max_iterations=%d with score %s",
                self._max_iterations,
                best_score,
            )
        return RatchetResult(best, best_score, iterations, converged, trace, accepted)

    def build_tree(self, matrix, rng=None):
        """Return the best topology found by search."""
        return self.search(matrix, rng).topology

    def __call__(self, matrix, rng=None):
        return self.build_tree(matrix, rng)

    def _perturb(self, matrix, rng):
        """Return matrix with a random site subset reweighted (PRIVATE)."""
        sites = matrix.site_count()
        chosen = rng.choice(
            sites, size=max(1, round(self._perturb_fraction * sites)), replace=False
        )
        weights = np.array(matrix.weights)
        weights[chosen] *= self._perturb_factor
        return matrix.reweight(weights)

    @staticmethod
    def _validate_perturb_fraction(perturb_fraction):
        """Check perturb_fraction is a float in (0, 1] (PRIVATE)."""
        if not isinstance(perturb_fraction, float) or not 0 < perturb_fraction <= 1:
            raise ValueError("perturb_fraction must be a float in (0, 1]!")
        return perturb_fraction

    @staticmethod
    def _validate_perturb_factor(perturb_factor):
        """Check perturb_factor is an integer of at least 2 (PRIVATE)."""
        if (
            not isinstance(perturb_factor, int)
            or isinstance(perturb_factor, bool)
            or perturb_factor < 2
        ):
            raise ValueError("perturb_factor must be an integer of at least 2!")
        return perturb_factor


def _validate_positive_int(value, name):
    """Check value is a positive integer (PRIVATE)."""
    if not isinstance(value, int) or isinstance(value, bool) or value < 1:
        raise ValueError(f"{name} must be a positive integer!")
    return value
