# Copyright (C) 2020 by Stanislaw Antonowicz (stas.antonowicz@gmail.com)

"""Parsimony tree search on top of Bio.Phylo.

The package scores unrooted topologies against an aligned character matrix,
rearranges them (NNI, SPR, stepwise addition), runs the parsimony ratchet
and collects bootstrap branch support.
"""

import logging

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())


class PhyloRatchetError(Exception):
    """Base class for the errors raised by PhyloRatchet."""


class FormatError(PhyloRatchetError, ValueError):
    """Character matrix input is malformed or inconsistent.

    Raised for unequal sequence lengths, duplicated taxon identifiers,
    symbols outside the alphabet and empty input.
    """


class TopologyMismatchError(PhyloRatchetError, ValueError):
    """Topology leaves and matrix taxa are not the same set."""


class DegenerateInputError(PhyloRatchetError, ValueError):
    """Fewer than three taxa, so no unrooted topology exists."""


class SearchNotConvergedError(PhyloRatchetError, RuntimeError):
    """Search stopped at its iteration cap.

    Never raised by the search itself, see RatchetResult.check_convergence.
    """
