# Copyright (C) 2020 by Stanislaw Antonowicz (stas.antonowicz@gmail.com)

"""Unit tests for the PhyloRatchet.CharacterMatrix module."""

import unittest
from io import StringIO

import numpy as np
from Bio.Align import MultipleSeqAlignment
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord

from PhyloRatchet import FormatError
from PhyloRatchet import TopologyMismatchError
from PhyloRatchet.CharacterMatrix import CharacterMatrix

PHYLIP = """ 4 6
Alpha     ACGTAC
Beta      ACGTTC
Gamma     ACCTTG
Delta     TCCTTG
"""


class LoadTest(unittest.TestCase):
    """Test building matrices and the FormatError cases."""

    def test_load_mapping(self):
        matrix = CharacterMatrix.load({"A": "ACGT", "B": "ACGA", "C": "acta"})
        self.assertEqual(matrix.taxa, ("A", "B", "C"))
        self.assertEqual(matrix.taxon_count(), 3)
        self.assertEqual(len(matrix), 3)
        self.assertEqual(matrix.site_count(), 4)
        self.assertEqual(matrix.sequence("C"), "ACTA")

    def test_load_pairs_and_records(self):
        pairs = [("A", "ACGT"), ("B", "ACGA"), ("C", "ACTA")]
        records = [SeqRecord(Seq(seq), id=taxon) for taxon, seq in pairs]
        msa = MultipleSeqAlignment(records)
        for source in [pairs, records, msa]:
            with self.subTest(line=type(source)):
                matrix = CharacterMatrix.load(source)
                self.assertEqual(matrix.taxa, ("A", "B", "C"))
                self.assertEqual(matrix.column(3), ("T", "A", "A"))

    def test_from_alignment_type(self):
        with self.assertRaises(TypeError):
            CharacterMatrix.from_alignment({"A": "ACGT"})

    def test_read_phylip(self):
        matrix = CharacterMatrix.read(StringIO(PHYLIP), "phylip")
        self.assertEqual(matrix.taxa, ("Alpha", "Beta", "Gamma", "Delta"))
        self.assertEqual(matrix.site_count(), 6)
        alignment = matrix.to_alignment()
        self.assertEqual([record.id for record in alignment], list(matrix.taxa))
        self.assertEqual(str(alignment[3].seq), "TCCTTG")

    def test_format_errors(self):
        bad_inputs = {
            "unequal": {"A": "ACGT", "B": "ACG", "C": "ACGT"},
            "duplicate": [("A", "ACGT"), ("B", "ACGT"), ("A", "ACGA")],
            "empty": {},
            "empty sequences": {"A": "", "B": ""},
            "not a pair": ["ACGT"],
        }
        for name, records in bad_inputs.items():
            with self.subTest(line=name):
                with self.assertRaises(FormatError):
                    CharacterMatrix.load(records)

    def test_unknown_symbol(self):
        with self.assertRaises(FormatError):
            CharacterMatrix.load({"A": "ACGE", "B": "ACGT"}, alphabet="dna")
        with self.assertRaises(ValueError):
            CharacterMatrix.load({"A": "ACGT"}, alphabet="rna")

    def test_format_error_is_value_error(self):
        with self.assertRaises(ValueError):
            CharacterMatrix.load({})


class AlphabetTest(unittest.TestCase):
    """Test alphabet detection and the state-set encoding."""

    def test_guess(self):
        cases = {
            "dna": {"A": "ACGTN-", "B": "ACGTRY"},
            "protein": {"A": "MKLV", "B": "MKIV"},
            "standard": {"A": "0120", "B": "01?1"},
        }
        for alphabet, records in cases.items():
            with self.subTest(line=alphabet):
                self.assertEqual(CharacterMatrix.load(records).alphabet, alphabet)

    def test_dna_codes(self):
        matrix = CharacterMatrix.load({"A": "ACGT", "B": "RU-N"})
        self.assertEqual(matrix.states, "ACGT")
        self.assertEqual(list(matrix.codes[0]), [1, 2, 4, 8])
        # R = A|G, U = T, gap and N allow everything
        self.assertEqual(list(matrix.codes[1]), [5, 8, 15, 15])

    def test_protein_ambiguity(self):
        matrix = CharacterMatrix.load({"A": "DN", "B": "BX"}, alphabet="protein")
        d, n = matrix.codes[0]
        b, x = matrix.codes[1]
        self.assertEqual(b, d | n)
        self.assertEqual(x, (1 << 20) - 1)

    def test_standard_states(self):
        matrix = CharacterMatrix.load({"A": "02", "B": "1?"})
        self.assertEqual(matrix.states, "012")
        self.assertEqual(list(matrix.codes[1]), [2, 7])


class AccessTest(unittest.TestCase):
    def setUp(self):
        self.matrix = CharacterMatrix.load({"A": "AAR", "B": "ACA", "C": "AGA"})

    def test_column(self):
        self.assertEqual(self.matrix.column(1), ("A", "C", "G"))
        self.assertEqual(self.matrix.column(-1), ("R", "A", "A"))
        for site in [3, -4]:
            with self.subTest(line=site):
                with self.assertRaises(IndexError):
                    self.matrix.column(site)

    def test_index(self):
        self.assertEqual(self.matrix.index("C"), 2)
        with self.assertRaises(TopologyMismatchError):
            self.matrix.index("Z")

    def test_variable_sites(self):
        # site 2 is invariant because R allows A
        self.assertEqual(self.matrix.variable_site_count(), 1)

    def test_read_only(self):
        with self.assertRaises(ValueError):
            self.matrix.weights[0] = 5
        with self.assertRaises(ValueError):
            self.matrix.codes[0, 0] = 5

    def test_subset(self):
        subset = self.matrix.subset(["C", "A"])
        self.assertEqual(subset.taxa, ("C", "A"))
        self.assertEqual(subset.column(1), ("G", "A"))
        with self.assertRaises(TopologyMismatchError):
            self.matrix.subset(["A", "Z"])
        with self.assertRaises(ValueError):
            self.matrix.subset(["A", "A"])

    def test_reweight(self):
        reweighted = self.matrix.reweight([1, 2, 3])
        self.assertEqual(list(reweighted.weights), [1, 2, 3])
        self.assertEqual(list(self.matrix.weights), [1, 1, 1])
        for weights in [[1, 2], [1, -1, 1], [1.5, 1, 1]]:
            with self.subTest(line=weights):
                with self.assertRaises(ValueError):
                    self.matrix.reweight(weights)


class ResampleTest(unittest.TestCase):
    def setUp(self):
        columns = [
            "AAAA", "AAAC", "AACC", "ACCC", "CCCC",
            "GGGG", "GGGT", "GGTT", "GTTT", "TTTT",
        ]
        taxa = ["t1", "t2", "t3", "t4"]
        self.matrix = CharacterMatrix.load(
            {taxon: "".join(col[i] for col in columns) for i, taxon in enumerate(taxa)}
        )
        self.columns = {self.matrix.column(i) for i in range(10)}

    def test_thousand_replicates(self):
        rng = np.random.default_rng(1)
        repeated = False
        missing = False
        for _ in range(1000):
            replicate = self.matrix.resample(rng)
            self.assertEqual(replicate.site_count(), 10)
            self.assertEqual(replicate.taxa, self.matrix.taxa)
            drawn = [replicate.column(i) for i in range(10)]
            self.assertTrue(set(drawn) <= self.columns)
            repeated = repeated or len(set(drawn)) < 10
            missing = missing or set(drawn) != self.columns
        self.assertTrue(repeated)
        self.assertTrue(missing)

    def test_seeded(self):
        first = self.matrix.resample(7)
        second = self.matrix.resample(7)
        self.assertEqual(
            [first.column(i) for i in range(10)],
            [second.column(i) for i in range(10)],
        )

    def test_weights_follow_columns(self):
        weighted = self.matrix.reweight(np.arange(1, 11))
        originals = [weighted.column(j) for j in range(10)]
        replicate = weighted.resample(3)
        for i in range(10):
            # original column j is unique and has weight j + 1
            j = originals.index(replicate.column(i))
            self.assertEqual(replicate.weights[i], j + 1)


if __name__ == "__main__":
    runner = unittest.TextTestRunner(verbosity=2)
    unittest.main(testRunner=runner)
