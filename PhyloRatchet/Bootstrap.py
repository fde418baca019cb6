# Copyright (C) 2020 by Magda Grynkiewicz (magda.markowska@gmail.com)

"""Bootstrap resampling and branch support tallies."""

import logging
import time
from collections import namedtuple
from concurrent.futures import FIRST_COMPLETED
from concurrent.futures import ProcessPoolExecutor
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import wait
from fractions import Fraction

import numpy as np

from PhyloRatchet import TopologyMismatchError
from PhyloRatchet.CharacterMatrix import CharacterMatrix
from PhyloRatchet.Topology import Topology

logger = logging.getLogger(__name__)

METHODS = ("standard", "transfer")

_EXECUTORS = {"thread": ThreadPoolExecutor, "process": ProcessPoolExecutor}

# seconds between checks of the cancel event
POLL_INTERVAL = 0.1


def transfer_support(split, topology, taxa):
    """Return the transfer support of split given one replicate topology.

    The transfer distance is the least number of taxa to move so that split
    becomes a bipartition of topology, trivial ones included. Support is
    1 - distance / (p - 1), p being the size of the smaller side, as an exact
    Fraction in [0, 1].
    """
    size = len(split)
    smaller = min(size, len(taxa) - size)
    best = smaller - 1
    for other in topology.bipartitions():
        distance = len(split ^ other)
        best = min(best, distance, len(taxa) - distance)
    return Fraction(smaller - 1 - best, smaller - 1)


class BranchSupportTally:
    """Accumulated bootstrap credit per bipartition.

    Tallies are immutable; record and merge return new ones. Credit is an
    int (standard) or an exact Fraction (transfer), so merging is
    commutative and associative.

    :Parameters:
        method: str
            "standard": each replicate adds 1 to every bipartition it contains.
            "transfer": each replicate adds its transfer support to every
            bipartition of a reference topology.
        counts: Dict[frozenset, int or Fraction]
            Credit per canonical bipartition.
        replicates: int
            Number of replicates folded in.
        taxa: frozenset
            Taxa of the recorded topologies, None while empty.
    """

    def __init__(self, method="standard", counts=None, replicates=0, taxa=None):
        """Init method for BranchSupportTally."""
        if method not in METHODS:
            raise ValueError(f"method must be one of {METHODS}!")
        if replicates < 0:
            raise ValueError("replicates must be non-negative!")
        self._method = method
        self._counts = dict(counts or {})
        self._replicates = replicates
        self._taxa = frozenset(taxa) if taxa is not None else None

    def __repr__(self):
        return (
            f"BranchSupportTally(method={self._method!r}, "
            f"replicates={self._replicates}, bipartitions={len(self._counts)})"
        )

    def __eq__(self, other):
        if not isinstance(other, BranchSupportTally):
            return NotImplemented
        return (
            self._method == other._method
            and self._replicates == other._replicates
            and self._taxa == other._taxa
            and self._counts == other._counts
        )

    @property
    def method(self):
        """Getter method for method."""
        return self._method

    @property
    def replicates(self):
        """Getter method for replicates."""
        return self._replicates

    @property
    def taxa(self):
        """Getter method for taxa."""
        return self._taxa

    @property
    def counts(self):
        """Getter method for counts (a copy)."""
        return dict(self._counts)

    def record(self, topology, reference=None):
        """Return a tally with one more replicate topology folded in.

        reference is required for transfer tallies; its bipartitions are the
        ones receiving credit.
        """
        if not isinstance(topology, Topology):
            raise TypeError("Must provide a Topology object.")
        taxa = topology.leaf_set
        if self._method == "standard":
            counts = {split: 1 for split in topology.bipartitions()}
        else:
            if reference is None:
                raise ValueError("Transfer support needs a reference topology!")
            if reference.leaf_set != taxa:
                raise TopologyMismatchError(
                    "Replicate and reference topologies have different taxa!"
                )
            counts = {
                split: transfer_support(split, topology, taxa)
                for split in reference.bipartitions()
            }
        return self.merge(BranchSupportTally(self._method, counts, 1, taxa))

    def merge(self, other):
        """Return the sum of two tallies."""
        if not isinstance(other, BranchSupportTally):
            raise TypeError("Can only merge BranchSupportTally objects!")
        if other._method != self._method:
            raise ValueError(
                f"Can't merge {self._method} and {other._method} tallies!"
            )
        if None not in (self._taxa, other._taxa) and self._taxa != other._taxa:
            raise TopologyMismatchError("Can't merge tallies over different taxa!")
        counts = dict(self._counts)
        for split, credit in other._counts.items():
            counts[split] = counts.get(split, 0) + credit
        taxa = self._taxa if self._taxa is not None else other._taxa
        return BranchSupportTally(
            self._method, counts, self._replicates + other._replicates, taxa
        )

    __add__ = merge

    def frequencies(self):
        """Return {bipartition: credit / replicates} as floats."""
        if not self._replicates:
            return {}
        return {
            split: float(credit) / self._replicates
            for split, credit in self._counts.items()
        }

    def support(self, topology):
        """Return {bipartition: support} for every bipartition of topology."""
        frequencies = self.frequencies()
        return {split: frequencies.get(split, 0.0) for split in topology.bipartitions()}

    def consensus(self, threshold=0.5):
        """Return the greedy consensus Topology of a standard tally.

        Bipartitions with a frequency above threshold are added from the most
        to the least frequent, skipping those in conflict with ones already
        added. threshold=0.5 gives the majority-rule consensus. Unresolved
        parts become polytomies.
        """
        if self._method != "standard":
            raise ValueError("Consensus needs a standard tally!")
        if self._taxa is None:
            raise ValueError("Can't build a consensus from an empty tally!")
        if not 0 <= threshold < 1:
            raise ValueError("threshold must be in [0, 1)!")
        anchor = min(self._taxa)
        frequencies = self.frequencies()
        ranked = sorted(
            (split for split, frequency in frequencies.items() if frequency > threshold),
            key=lambda split: (-frequencies[split], sorted(split)),
        )
        clusters = []
        for split in ranked:
            cluster = self._taxa - split if anchor in split else split
            if all(
                cluster <= other or other <= cluster or not cluster & other
                for other in clusters
            ):
                clusters.append(cluster)
        return self._cluster_topology(anchor, clusters)

    def _cluster_topology(self, anchor, clusters):
        """Build a topology from compatible clusters not holding anchor (PRIVATE)."""
        placed = [self._taxa - {anchor}]
        labels = [None]
        adjacency = [[]]

        def attach(members, label):
            parent = next(
                i for i in reversed(range(len(placed))) if members <= placed[i]
            )
            labels.append(label)
            adjacency.append([parent])
            adjacency[parent].append(len(labels) - 1)

        for cluster in sorted(clusters, key=len, reverse=True):
            attach(cluster, None)
            placed.append(cluster)
        for taxon in sorted(self._taxa - {anchor}):
            attach(frozenset((taxon,)), taxon)
        labels.append(anchor)
        adjacency.append([0])
        adjacency[0].append(len(labels) - 1)
        return Topology(labels, adjacency)


def _replicate(matrix, tree_builder, seed, method, reference):
    """Resample, build one tree and tally it (PRIVATE).

    Module level so that process pools can pickle it.
    """
    rng = np.random.default_rng(seed)
    topology = tree_builder(matrix.resample(rng), rng)
    return BranchSupportTally(method).record(topology, reference)


class BootstrapResult(
    namedtuple(
        "BootstrapResult", ["tally", "completed", "requested", "timed_out", "cancelled"]
    )
):
    """Tally plus how many replicates finished and why the run stopped."""

    __slots__ = ()

    @property
    def partial(self):
        """True if fewer replicates finished than requested."""
        return self.completed < self.requested


class BootstrapResampler:
    """A class representing bootstrap branch support estimation.

    Replicate i draws its columns and runs tree_builder with its own numpy
    Generator, spawned from the run seed by index, so results do not depend
    on scheduling.

    :Parameters:
        tree_builder: Callable[[CharacterMatrix, Generator], Topology]
            Builds one tree per replicate, e.g. ParsimonyRatchet().build_tree
            or a ParsimonyTreeConstructor. Must be picklable for the process
            executor.
        replicates: int
            Number of replicates. Default: 100.
        method: str
            "standard" or "transfer". Default: "standard".
        workers: int
            Parallel workers. Default: 1.
        executor: str
            "thread" or "process". Default: "thread".
        timeout: float
            Seconds after which the replicates finished so far are returned.
            Default: None (no limit).

    Examples
    --------
    >>> from PhyloRatchet.Bootstrap import BootstrapResampler
    >>> from PhyloRatchet.Ratchet import ParsimonyTreeConstructor
    >>> resampler = BootstrapResampler(ParsimonyTreeConstructor(), replicates=50)
    >>> result = resampler.run(matrix, rng=1)  # doctest: +SKIP
    >>> result.tally.support(best_topology)  # doctest: +SKIP

    """

    def __init__(
        self,
        tree_builder,
        replicates=100,
        method="standard",
        workers=1,
        executor="thread",
        timeout=None,
    ):
        """Init method for BootstrapResampler."""
        if not callable(tree_builder):
            raise TypeError("tree_builder must be callable!")
        self.tree_builder = tree_builder
        self.replicates = replicates
        self.method = method
        self.workers = workers
        self.executor = executor
        self.timeout = timeout

    @property
    def replicates(self):
        """Getter method for replicates."""
        return self._replicates

    @replicates.setter
    def replicates(self, value):
        """Setter method for replicates."""
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ValueError("replicates must be a positive integer!")
        self._replicates = value

    @property
    def method(self):
        """Getter method for method."""
        return self._method

    @method.setter
    def method(self, value):
        """Setter method for method."""
        if value not in METHODS:
            raise ValueError(f"method must be one of {METHODS}!")
        self._method = value

    @property
    def workers(self):
        """Getter method for workers."""
        return self._workers

    @workers.setter
    def workers(self, value):
        """Setter method for workers."""
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ValueError("workers must be a positive integer!")
        self._workers = value

    @property
    def executor(self):
        """Getter method for executor."""
        return self._executor

    @executor.setter
    def executor(self, value):
        """Setter method for executor."""
        if value not in _EXECUTORS:
            raise ValueError(f"executor must be one of {sorted(_EXECUTORS)}!")
        self._executor = value

    @property
    def timeout(self):
        """Getter method for timeout."""
        return self._timeout

    @timeout.setter
    def timeout(self, value):
        """Setter method for timeout."""
        if value is not None and value < 0:
            raise ValueError("timeout must be non-negative or None!")
        self._timeout = value

    def run(self, matrix, rng=None, reference=None, cancel=None):
        """Run the replicates and return a BootstrapResult.

        Arguments:
            - matrix - CharacterMatrix to resample,
            - rng - numpy Generator or seed for the whole run,
            - reference - Topology receiving transfer support; built with
              tree_builder from matrix when missing in transfer mode,
            - cancel - threading.Event; once set, remaining replicates are
              abandoned and the partial tally returned.
        """
        if not isinstance(matrix, CharacterMatrix):
            raise TypeError("Arg matrix must be a CharacterMatrix object!")
        rng = np.random.default_rng(rng)
        if self._method == "transfer" and reference is None:
            reference = self.tree_builder(matrix, rng)
        base = int(rng.integers(np.iinfo(np.int64).max))
        seeds = np.random.SeedSequence(base).spawn(self._replicates)
        logger.info(
            "Bootstrap: %d %s replicates on %d worker(s)",
            self._replicates,
            self._method,
            self._workers,
        )
        deadline = None if self._timeout is None else time.monotonic() + self._timeout
        tally, timed_out, cancelled = self._run_pool(
            matrix, seeds, reference, deadline, cancel
        )
        if timed_out:
            logger.warning(
                "Bootstrap timed out after %d of %d replicates",
                tally.replicates,
                self._replicates,
            )
        if cancelled:
            logger.warning(
                "Bootstrap cancelled after %d of %d replicates",
                tally.replicates,
                self._replicates,
            )
        return BootstrapResult(
            tally, tally.replicates, self._replicates, timed_out, cancelled
        )

    def _run_pool(self, matrix, seeds, reference, deadline, cancel):
        """Run replicates on a worker pool, merging in completion order (PRIVATE).

        A single worker still runs in the pool, so the caller waits on
        futures and can stop at the deadline or on cancel while a replicate
        is running.
        """
        tally = BranchSupportTally(self._method)
        timed_out = cancelled = False
        pool = _EXECUTORS[self._executor](max_workers=self._workers)
        try:
            pending = {
                pool.submit(
                    _replicate, matrix, self.tree_builder, seed, self._method, reference
                )
                for seed in seeds
            }
            while pending:
                if cancel is not None and cancel.is_set():
                    cancelled = True
                    break
                wait_for = POLL_INTERVAL if cancel is not None else None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        timed_out = True
                        break
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                done, pending = wait(pending, timeout=wait_for, return_when=FIRST_COMPLETED)
                for future in done:
                    tally = tally.merge(future.result())
                    logger.debug("Bootstrap replicate %d done", tally.replicates)
            for future in pending:
                if future.done() and not future.cancelled() and future.exception() is None:
                    tally = tally.merge(future.result())
        finally:
            pool.shutdown(wait=not (timed_out or cancelled), cancel_futures=True)
        return tally, timed_out, cancelled


def run(matrix, tree_builder, replicates, rng=None, method="standard", **kwargs):
    """Return the BranchSupportTally of a bootstrap run.

    kwargs (workers, executor, timeout, reference, cancel) go to
    BootstrapResampler and its run method.
    """
    run_kwargs = {key: kwargs.pop(key) for key in ("reference", "cancel") if key in kwargs}
    resampler = BootstrapResampler(tree_builder, replicates, method, **kwargs)
    return resampler.run(matrix, rng, **run_kwargs).tally
