"""Readers for alignments, Newick trees and seed partitions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import pandas as pd
from Bio import Phylo, SeqIO
from Bio.Phylo.BaseTree import Tree

from ..errors import EmptyInputError
from .schema import SEED_PARTITION_SCHEMA, DatasetSchema
from .store import SparseCountStore

__all__ = [
    "ALIGNMENT_FORMATS",
    "MissingColumnsError",
    "load_alignment",
    "load_seed_labels",
    "load_tree",
]

logger = logging.getLogger(__name__)

ALIGNMENT_FORMATS = {
    ".fa": "fasta",
    ".fas": "fasta",
    ".fasta": "fasta",
    ".fna": "fasta",
    ".aln": "clustal",
    ".phy": "phylip-relaxed",
    ".sto": "stockholm",
    ".nex": "nexus",
}


class MissingColumnsError(ValueError):
    """Raised when a dataset is missing required columns."""

    def __init__(self, schema: DatasetSchema, missing: list[str]):
        message = (
            f"{schema.name.capitalize()} data is missing required columns: {', '.join(missing)}. "
            f"Expected columns include: {', '.join(schema.required_columns)}."
        )
        super().__init__(message)
        self.schema = schema
        self.missing = missing


def load_alignment(
    path: str | Path,
    *,
    format: str | None = None,
    polymorphic_only: bool = False,
) -> SparseCountStore:
    """Read an alignment with Biopython and encode it as a sparse store.

    ``format`` is any ``Bio.SeqIO`` format name; when omitted it is inferred
    from the file suffix and defaults to FASTA.
    """

    path = Path(path)
    file_format = format or ALIGNMENT_FORMATS.get(path.suffix.lower(), "fasta")
    records = list(SeqIO.parse(str(path), file_format))
    if not records:
        raise EmptyInputError(f"No sequences found in {path} (format '{file_format}')")

    logger.info(f"Read {len(records)} sequences from {path}")
    return SparseCountStore.from_sequences(
        [record.id for record in records],
        [str(record.seq) for record in records],
        polymorphic_only=polymorphic_only,
    )


def load_tree(path: str | Path, *, format: str = "newick") -> Tree:
    """Read a single tree with ``Bio.Phylo``."""

    return Phylo.read(str(path), format)


def load_seed_labels(path: str | Path, sequence_ids: Sequence[str]) -> list[str]:
    """Read a ``SequenceId``/``Cluster`` CSV and return labels in ``sequence_ids`` order."""

    path = Path(path)
    if path.suffix.lower() != ".csv":
        raise ValueError(f"Unsupported file type '{path.suffix}' for seed partition data")
    frame = pd.read_csv(path, dtype=SEED_PARTITION_SCHEMA.dtype_for_read())
    missing = SEED_PARTITION_SCHEMA.missing_required(frame.columns)
    if missing:
        raise MissingColumnsError(SEED_PARTITION_SCHEMA, missing)

    labels = dict(zip(frame["SequenceId"].astype(str), frame["Cluster"].astype(str)))
    absent = [sequence_id for sequence_id in sequence_ids if sequence_id not in labels]
    if absent:
        raise ValueError(
            f"Seed partition has no cluster for {len(absent)} sequences: {', '.join(absent[:5])}"
        )
    return [labels[sequence_id] for sequence_id in sequence_ids]
