# Copyright (C) 2020 by Stanislaw Antonowicz (stas.antonowicz@gmail.com)

"""Aligned, encoded character matrix shared by all search algorithms."""

import logging
from collections.abc import Mapping

import numpy as np
from Bio import AlignIO
from Bio.Align import MultipleSeqAlignment
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord

from PhyloRatchet import FormatError
from PhyloRatchet import TopologyMismatchError

logger = logging.getLogger(__name__)

# symbols meaning "any state" in every alphabet
MISSING = "-?"

DNA_STATES = "ACGT"
DNA_AMBIGUITY = {
    "U": "T",
    "R": "AG",
    "Y": "CT",
    "S": "CG",
    "W": "AT",
    "K": "GT",
    "M": "AC",
    "B": "CGT",
    "D": "AGT",
    "H": "ACT",
    "V": "ACG",
    "N": DNA_STATES,
}

PROTEIN_STATES = "ACDEFGHIKLMNPQRSTVWY"
PROTEIN_AMBIGUITY = {
    "B": "DN",
    "Z": "EQ",
    "J": "IL",
    "X": PROTEIN_STATES,
    "*": PROTEIN_STATES,
}

# state sets are stored as uint32 bitmasks
MAX_STATES = 32


def _code_table(states, ambiguity=None):
    """Map every accepted symbol to its state-set bitmask (PRIVATE)."""
    table = {sym: 1 << i for i, sym in enumerate(states)}
    for sym, members in (ambiguity or {}).items():
        code = 0
        for member in members:
            code |= table[member]
        table[sym] = code
    everything = (1 << len(states)) - 1
    for sym in MISSING:
        table[sym] = everything
    return table


_ALPHABETS = {
    "dna": (DNA_STATES, _code_table(DNA_STATES, DNA_AMBIGUITY)),
    "protein": (PROTEIN_STATES, _code_table(PROTEIN_STATES, PROTEIN_AMBIGUITY)),
}


class CharacterMatrix:
    """Immutable aligned dataset of taxa x sites.

    Each cell keeps its original symbol and the set of states it allows,
    stored as a bitmask. Ambiguity codes and gaps allow several states.
    Every site carries an integer weight (1 unless reweighted or resampled).

    :Parameters:
        records: Mapping[str, str] or Iterable
            Either a {taxon: sequence} mapping, an iterable of
            (taxon, sequence) pairs or an iterable of SeqRecord objects
            (a MultipleSeqAlignment works as is).
        alphabet: str
            "dna", "protein" or "standard". Guessed from the symbols if None.

    Examples
    --------
    >>> from PhyloRatchet.CharacterMatrix import CharacterMatrix
    >>> matrix = CharacterMatrix.load({"A": "ACGT", "B": "ACGA", "C": "ACTA"})
    >>> matrix.taxon_count(), matrix.site_count()
    (3, 4)
    >>> matrix.column(2)
    ('G', 'G', 'T')
    >>> matrix.alphabet
    'dna'

    """

    def __init__(self, records, alphabet=None):
        """Init method for CharacterMatrix, validates and encodes records."""
        pairs = self._read_records(records)
        self._validate_pairs(pairs)

        symbols_used = set()
        for _, sequence in pairs:
            symbols_used.update(sequence)
        if alphabet is None:
            alphabet = self._guess_alphabet(symbols_used)
        states, table = self._get_alphabet(alphabet, symbols_used)
        unknown = symbols_used - set(table)
        if unknown:
            raise FormatError(
                f"Symbols {sorted(unknown)} are not valid for alphabet {alphabet}!"
            )

        taxa = tuple(taxon for taxon, _ in pairs)
        symbols = np.array([list(sequence) for _, sequence in pairs], dtype="<U1")
        codes = np.array(
            [[table[sym] for sym in sequence] for _, sequence in pairs],
            dtype=np.uint32,
        )
        weights = np.ones(symbols.shape[1], dtype=np.int64)
        self._set_state(taxa, symbols, codes, weights, alphabet, states)
        logger.debug(
            "Loaded %d taxa x %d sites (%s)", len(taxa), symbols.shape[1], alphabet
        )

    @classmethod
    def load(cls, records, alphabet=None):
        """Build a matrix from aligned records.

        Raises FormatError on unequal lengths, duplicated taxa, unknown
        symbols or empty input.
        """
        return cls(records, alphabet=alphabet)

    @classmethod
    def from_alignment(cls, msa, alphabet=None):
        """Build a matrix from a Bio.Align.MultipleSeqAlignment."""
        if not isinstance(msa, MultipleSeqAlignment):
            raise TypeError("Arg msa must be a MultipleSeqAlignment object!")
        return cls(msa, alphabet=alphabet)

    @classmethod
    def read(cls, handle, format, alphabet=None):
        """Read an alignment file with Bio.AlignIO and build a matrix."""
        return cls.from_alignment(AlignIO.read(handle, format), alphabet=alphabet)

    def _set_state(self, taxa, symbols, codes, weights, alphabet, states):
        """Store the arrays as read-only (PRIVATE)."""
        for array in (symbols, codes, weights):
            array.setflags(write=False)
        self._taxa = taxa
        self._index = {taxon: i for i, taxon in enumerate(taxa)}
        self._symbols = symbols
        self._codes = codes
        self._weights = weights
        self._alphabet = alphabet
        self._states = states

    def _derive(self, rows=None, columns=None, weights=None):
        """Return a new matrix sharing this matrix's encoding (PRIVATE)."""
        taxa, symbols, codes = self._taxa, self._symbols, self._codes
        new_weights = self._weights
        if rows is not None:
            taxa = tuple(self._taxa[i] for i in rows)
            symbols = symbols[rows, :]
            codes = codes[rows, :]
        if columns is not None:
            symbols = symbols[:, columns]
            codes = codes[:, columns]
            new_weights = new_weights[columns]
        if weights is not None:
            new_weights = weights
        other = self.__class__.__new__(self.__class__)
        other._set_state(
            taxa,
            np.array(symbols),
            np.array(codes),
            np.array(new_weights, dtype=np.int64),
            self._alphabet,
            self._states,
        )
        return other

    def __repr__(self):
        return (
            f"CharacterMatrix({self.taxon_count()} taxa x {self.site_count()} sites, "
            f"alphabet={self._alphabet!r})"
        )

    def __len__(self):
        return len(self._taxa)

    @property
    def taxa(self):
        """Getter method for taxa, in load order."""
        return self._taxa

    @property
    def alphabet(self):
        """Getter method for alphabet."""
        return self._alphabet

    @property
    def states(self):
        """Getter method for states, the symbols with one bit each."""
        return self._states

    @property
    def weights(self):
        """Getter method for weights (read-only numpy array)."""
        return self._weights

    @property
    def codes(self):
        """Getter method for the taxa x sites state-set bitmasks."""
        return self._codes

    def site_count(self):
        """Return number of sites (columns)."""
        return self._symbols.shape[1]

    def taxon_count(self):
        """Return number of taxa (rows)."""
        return len(self._taxa)

    def index(self, taxon):
        """Return the row of taxon, raise TopologyMismatchError if absent."""
        try:
            return self._index[taxon]
        except KeyError:
            raise TopologyMismatchError(
                f"Taxon {taxon!r} is not in the matrix!"
            ) from None

    def sequence(self, taxon):
        """Return the symbols of taxon as a string."""
        return "".join(self._symbols[self.index(taxon)])

    def column(self, i):
        """Return the per-taxon symbols of site i, in taxon order."""
        if not -self.site_count() <= i < self.site_count():
            raise IndexError(f"Site {i} out of range!")
        return tuple(str(sym) for sym in self._symbols[:, i])

    def resample(self, rng=None):
        """Return a bootstrap matrix with columns drawn with replacement.

        Draws site_count() columns, keeps taxon order. Column weights travel
        with their columns. rng is a numpy Generator or a seed.
        """
        rng = np.random.default_rng(rng)
        columns = rng.integers(0, self.site_count(), size=self.site_count())
        return self._derive(columns=columns)

    def reweight(self, weights):
        """Return the same matrix with new non-negative integer site weights."""
        weights = np.asarray(weights)
        if weights.shape != (self.site_count(),):
            raise ValueError("weights must have exactly one entry per site!")
        if weights.size and not np.issubdtype(weights.dtype, np.integer):
            raise ValueError("weights must be integers!")
        if np.any(weights < 0):
            raise ValueError("weights must be non-negative!")
        return self._derive(weights=weights)

    def subset(self, taxa):
        """Return a matrix restricted to taxa, rows in the given order."""
        rows = [self.index(taxon) for taxon in taxa]
        if len(set(rows)) != len(rows):
            raise ValueError("taxa must not contain duplicates!")
        return self._derive(rows=rows)

    def variable_site_count(self):
        """Return number of sites where no single state fits every taxon."""
        common = np.bitwise_and.reduce(self._codes, axis=0)
        return int(np.count_nonzero(common == 0))

    def to_alignment(self):
        """Return the matrix as a Bio.Align.MultipleSeqAlignment."""
        return MultipleSeqAlignment(
            SeqRecord(Seq(self.sequence(taxon)), id=taxon, name=taxon)
            for taxon in self._taxa
        )

    @staticmethod
    def _read_records(records):
        """Normalise records to a list of (taxon, SEQUENCE) pairs (PRIVATE)."""
        if isinstance(records, Mapping):
            items = list(records.items())
        else:
            items = []
            for record in records:
                if isinstance(record, SeqRecord):
                    items.append((record.id, record.seq))
                    continue
                try:
                    taxon, sequence = record
                except (TypeError, ValueError):
                    raise FormatError(
                        f"Can't interpret {record!r} as a (taxon, sequence) pair!"
                    ) from None
                items.append((taxon, sequence))
        return [(str(taxon), str(sequence).upper()) for taxon, sequence in items]

    @staticmethod
    def _validate_pairs(pairs):
        """Check taxa are unique and sequences are aligned (PRIVATE)."""
        if not pairs:
            raise FormatError("No sequences found!")
        seen = set()
        for taxon, _ in pairs:
            if taxon in seen:
                raise FormatError(f"Duplicate taxon identifier {taxon!r}!")
            seen.add(taxon)
        lengths = {len(sequence) for _, sequence in pairs}
        if len(lengths) > 1:
            raise FormatError(
                f"Sequences must be of equal length, found lengths {sorted(lengths)}!"
            )
        if 0 in lengths:
            raise FormatError("Sequences must not be empty!")

    @staticmethod
    def _guess_alphabet(symbols):
        """Return the narrowest alphabet covering symbols (PRIVATE)."""
        for alphabet in ("dna", "protein"):
            if symbols <= set(_ALPHABETS[alphabet][1]):
                return alphabet
        return "standard"

    @staticmethod
    def _get_alphabet(alphabet, symbols):
        """Return states and symbol table of alphabet (PRIVATE)."""
        if alphabet in _ALPHABETS:
            return _ALPHABETS[alphabet]
        if alphabet != "standard":
            raise ValueError(
                f"alphabet must be one of 'dna', 'protein', 'standard', not {alphabet!r}!"
            )
        states = "".join(sorted(symbols - set(MISSING)))
        if not states:
            # an all-missing matrix still needs one state
            states = "0"
        if len(states) > MAX_STATES:
            raise FormatError(
                f"Standard alphabet supports at most {MAX_STATES} states, found {len(states)}!"
            )
        return states, _code_table(states)
