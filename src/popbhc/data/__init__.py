"""Sparse allele storage and input loaders."""

from .loaders import MissingColumnsError, load_alignment, load_seed_labels, load_tree
from .schema import SCHEMAS, SEED_PARTITION_SCHEMA, DatasetSchema
from .store import ALPHABET, MISSING_SLOT, N_ALLELES, N_SLOTS, ClusterCounts, SparseCountStore

__all__ = [
    "ALPHABET",
    "ClusterCounts",
    "DatasetSchema",
    "MISSING_SLOT",
    "MissingColumnsError",
    "N_ALLELES",
    "N_SLOTS",
    "SCHEMAS",
    "SEED_PARTITION_SCHEMA",
    "SparseCountStore",
    "load_alignment",
    "load_seed_labels",
    "load_tree",
]
