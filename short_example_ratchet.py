# Copyright (C) 2020 by Magda Grynkiewicz (magda.markowska@gmail.com)

"""Exemplary usage of PhyloRatchet classes."""

import logging

from Bio import Phylo

from PhyloRatchet.Bootstrap import BootstrapResampler
from PhyloRatchet.CharacterMatrix import CharacterMatrix
from PhyloRatchet.Parsimony import score
from PhyloRatchet.Ratchet import ParsimonyRatchet
from PhyloRatchet.Ratchet import ParsimonyTreeConstructor
from PhyloRatchet.Ratchet import distance_topology

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")

# Read the aligned sequences
matrix = CharacterMatrix.read("msa.phy", "phylip")

# Print the matrix
print(matrix)
print("Variable sites:", matrix.variable_site_count())

# Construct the neighbour joining tree and score it
nj_topology = distance_topology(matrix, "nj")
print("\nNeighbour joining tree score:", score(nj_topology, matrix))

# Improve it with the parsimony ratchet
ratchet = ParsimonyRatchet(minit=5, max_iterations=50)
result = ratchet.search(matrix, rng=2020, start=nj_topology)
print("Ratchet score:", result.score, "converged:", result.converged)
print("Score trace:", result.trace)

# Bootstrap support for the best tree
resampler = BootstrapResampler(ParsimonyTreeConstructor(), replicates=100, workers=4)
bootstrap = resampler.run(matrix, rng=2020)
supports = bootstrap.tally.support(result.topology)

# Print the phylogenetic tree in the terminal
print("\nMost parsimonious tree\n===================")
Phylo.draw_ascii(result.topology.to_tree(supports))
print(result.topology.to_newick(supports))

# Majority-rule consensus of the replicates
print("\nMajority-rule consensus\n===================")
print(bootstrap.tally.consensus().to_newick(plain=True))
