"""Sparse allele-count representation of an aligned set of sequences."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import cached_property
from typing import Iterable, Mapping, Sequence

import numpy as np
from scipy import sparse

from ..errors import EmptyInputError, MismatchedDimensions


logger = logging.getLogger(__name__)

ALPHABET = "ACGT"
N_ALLELES = len(ALPHABET)
MISSING_SLOT = N_ALLELES
N_SLOTS = N_ALLELES + 1
"""Each site owns ``N_SLOTS`` rows: one per allele followed by a missing-data row."""

_CHUNK_SITES = 4096

_ENCODING = np.full(256, MISSING_SLOT, dtype=np.int8)
for _code, _base in enumerate(ALPHABET):
    _ENCODING[ord(_base)] = _code
    _ENCODING[ord(_base.lower())] = _code
_ENCODING[ord("U")] = _ENCODING[ord("T")]
_ENCODING[ord("u")] = _ENCODING[ord("T")]


@dataclass(frozen=True, slots=True, eq=False)
class ClusterCounts:
    """Aggregated sparse allele counts for a set of sequences.

    ``rows`` holds the sorted, unique store rows (``site * N_SLOTS + slot``)
    with a non-zero count. Calls at the implicit reference allele are not
    listed; they are recovered from ``size``.
    """

    rows: np.ndarray
    counts: np.ndarray
    size: int

    @classmethod
    def empty(cls, size: int = 0) -> ClusterCounts:
        return cls(np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.int64), size)

    @property
    def nnz(self) -> int:
        return int(self.rows.size)

    @property
    def sites(self) -> np.ndarray:
        return self.rows // N_SLOTS

    @property
    def slots(self) -> np.ndarray:
        return self.rows % N_SLOTS

    def __add__(self, other: object) -> ClusterCounts:
        if not isinstance(other, ClusterCounts):
            return NotImplemented

        size = self.size + other.size
        if other.rows.size == 0:
            return ClusterCounts(self.rows, self.counts, size)
        if self.rows.size == 0:
            return ClusterCounts(other.rows, other.counts, size)

        rows = np.concatenate((self.rows, other.rows))
        counts = np.concatenate((self.counts, other.counts))
        merged_rows, inverse = np.unique(rows, return_inverse=True)
        merged_counts = np.bincount(inverse, weights=counts, minlength=merged_rows.size)
        return ClusterCounts(merged_rows, merged_counts.astype(np.int64), size)


@dataclass(frozen=True, eq=False, repr=False)
class SparseCountStore:
    """Immutable sparse per-site allele calls for ``n_sequences`` aligned sequences.

    Only calls that differ from each site's reference allele are stored. The
    matrix ``calls`` has one column per sequence and ``N_SLOTS`` rows per
    site; a ``1`` at row ``site * N_SLOTS + slot`` records an allele call
    (``slot`` 0-3) or missing data (``slot == MISSING_SLOT``).
    """

    sequence_ids: tuple[str, ...]
    reference: np.ndarray
    calls: sparse.csc_matrix
    site_positions: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))

    def __post_init__(self) -> None:
        sequence_ids = tuple(str(sequence_id) for sequence_id in self.sequence_ids)
        if not sequence_ids:
            raise EmptyInputError("Alignment contains no sequences")
        if len(set(sequence_ids)) != len(sequence_ids):
            raise ValueError("Sequence identifiers must be unique")

        reference = np.array(self.reference, dtype=np.int8, copy=True).ravel()
        if reference.size == 0:
            raise EmptyInputError("Alignment contains no informative sites")
        if reference.min() < 0 or reference.max() >= N_ALLELES:
            raise ValueError("Reference alleles must be encoded in [0, 4)")

        calls = sparse.csc_matrix(self.calls, dtype=np.int8)
        expected_shape = (reference.size * N_SLOTS, len(sequence_ids))
        if calls.shape != expected_shape:
            raise MismatchedDimensions(
                f"Call matrix has shape {calls.shape}; expected {expected_shape} "
                f"for {reference.size} sites and {len(sequence_ids)} sequences"
            )
        calls.sum_duplicates()
        calls.eliminate_zeros()
        if calls.nnz and calls.data.max() > 1:
            raise ValueError("Each (site, allele, sequence) call must be 0 or 1")

        positions = np.asarray(self.site_positions, dtype=np.int64).ravel()
        if positions.size == 0:
            positions = np.arange(reference.size, dtype=np.int64)
        elif positions.size != reference.size:
            raise MismatchedDimensions(
                f"{positions.size} site positions supplied for {reference.size} sites"
            )

        reference.setflags(write=False)
        positions.setflags(write=False)
        object.__setattr__(self, "sequence_ids", sequence_ids)
        object.__setattr__(self, "reference", reference)
        object.__setattr__(self, "calls", calls)
        object.__setattr__(self, "site_positions", positions)

    @classmethod
    def from_sequences(
        cls,
        sequence_ids: Sequence[str],
        sequences: Sequence[str],
        *,
        polymorphic_only: bool = False,
    ) -> SparseCountStore:
        """Encode aligned sequences into a sparse store.

        Parameters
        ----------
        sequence_ids:
            Identifiers, one per sequence, in the order used for every index
            exposed by the store.
        sequences:
            Aligned sequences of identical length. ``A``, ``C``, ``G``, ``T``
            (and ``U``) are allele calls; every other character is missing.
        polymorphic_only:
            Drop sites with a single observed allele. Sites with no observed
            allele are always dropped.
        """

        sequence_ids = [str(sequence_id) for sequence_id in sequence_ids]
        sequences = [str(sequence) for sequence in sequences]
        if len(sequence_ids) != len(sequences):
            raise MismatchedDimensions(
                f"{len(sequence_ids)} identifiers supplied for {len(sequences)} sequences"
            )
        if not sequences:
            raise EmptyInputError("Alignment contains no sequences")

        length = len(sequences[0])
        ragged = [sequence_id for sequence_id, sequence in zip(sequence_ids, sequences) if len(sequence) != length]
        if ragged:
            raise MismatchedDimensions(
                f"Sequences are not aligned to length {length}: {', '.join(ragged[:5])}"
            )

        raw = [np.frombuffer(sequence.encode("ascii", errors="replace"), dtype=np.uint8) for sequence in sequences]

        row_parts: list[np.ndarray] = []
        column_parts: list[np.ndarray] = []
        reference_parts: list[np.ndarray] = []
        position_parts: list[np.ndarray] = []
        n_kept = 0

        for start in range(0, length, _CHUNK_SITES):
            stop = min(start + _CHUNK_SITES, length)
            block = _ENCODING[np.stack([values[start:stop] for values in raw])]
            totals = np.stack([(block == code).sum(axis=0) for code in range(N_ALLELES)], axis=1)
            observed = totals > 0
            keep = observed.any(axis=1)
            if polymorphic_only:
                keep &= observed.sum(axis=1) > 1
            if not keep.any():
                continue

            block = block[:, keep]
            reference = totals[keep].argmax(axis=1).astype(np.int8)
            sequence_index, site_index = np.nonzero(block != reference[None, :])
            slots = block[sequence_index, site_index].astype(np.int64)

            row_parts.append((site_index.astype(np.int64) + n_kept) * N_SLOTS + slots)
            column_parts.append(sequence_index.astype(np.int64))
            reference_parts.append(reference)
            position_parts.append(np.flatnonzero(keep) + start)
            n_kept += reference.size

        if n_kept == 0:
            raise EmptyInputError(
                f"Alignment of {len(sequences)} sequences contains no informative sites"
            )

        rows = np.concatenate(row_parts)
        columns = np.concatenate(column_parts)
        calls = sparse.csc_matrix(
            (np.ones(rows.size, dtype=np.int8), (rows, columns)),
            shape=(n_kept * N_SLOTS, len(sequences)),
        )
        store = cls(
            sequence_ids=tuple(sequence_ids),
            reference=np.concatenate(reference_parts),
            calls=calls,
            site_positions=np.concatenate(position_parts),
        )
        logger.info(
            f"Encoded {store.n_sequences} sequences over {store.n_sites} informative sites "
            f"({store.nnz} sparse entries, {length - store.n_sites} sites dropped)"
        )
        return store

    @classmethod
    def from_mapping(
        cls,
        records: Mapping[str, str] | Iterable[tuple[str, str]],
        *,
        polymorphic_only: bool = False,
    ) -> SparseCountStore:
        """Encode ``{sequence_id: sequence}`` pairs, preserving their order."""

        items = list(records.items()) if isinstance(records, Mapping) else list(records)
        return cls.from_sequences(
            [sequence_id for sequence_id, _ in items],
            [sequence for _, sequence in items],
            polymorphic_only=polymorphic_only,
        )

    def __repr__(self) -> str:
        return (
            f"SparseCountStore(n_sequences={self.n_sequences}, n_sites={self.n_sites}, "
            f"nnz={self.nnz})"
        )

    @property
    def n_sequences(self) -> int:
        return len(self.sequence_ids)

    @property
    def n_sites(self) -> int:
        return int(self.reference.size)

    @property
    def nnz(self) -> int:
        return int(self.calls.nnz)

    @cached_property
    def index_by_id(self) -> dict[str, int]:
        return {sequence_id: index for index, sequence_id in enumerate(self.sequence_ids)}

    def leaf_counts(self, index: int) -> ClusterCounts:
        """Return the counts contributed by a single sequence."""

        if not 0 <= int(index) < self.n_sequences:
            raise MismatchedDimensions(
                f"Sequence index {index} is outside [0, {self.n_sequences})"
            )
        start, stop = self.calls.indptr[index], self.calls.indptr[index + 1]
        rows = np.sort(self.calls.indices[start:stop]).astype(np.int64)
        return ClusterCounts(rows, np.ones(rows.size, dtype=np.int64), 1)

    def aggregate(self, indices: Iterable[int]) -> ClusterCounts:
        """Sum the calls of ``indices``; cost scales with the entries touched."""

        index_array = self._validate_indices(indices)
        if index_array.size == 0:
            return ClusterCounts.empty()
        if index_array.size == 1:
            return self.leaf_counts(int(index_array[0]))
        selected = self.calls[:, index_array]
        rows, counts = np.unique(selected.indices, return_counts=True)
        return ClusterCounts(rows.astype(np.int64), counts.astype(np.int64), int(index_array.size))

    @cached_property
    def _slot_totals(self) -> np.ndarray:
        totals = np.bincount(self.calls.indices, minlength=self.n_sites * N_SLOTS)
        return totals.reshape(self.n_sites, N_SLOTS).astype(np.int64)

    def allele_totals(self) -> np.ndarray:
        """Dense ``(n_sites, 4)`` observed allele counts over every sequence."""

        slot_totals = self._slot_totals
        totals = slot_totals[:, :N_ALLELES].copy()
        reference_counts = self.n_sequences - slot_totals.sum(axis=1)
        totals[np.arange(self.n_sites), self.reference] += reference_counts
        return totals

    def observed_alleles(self) -> np.ndarray:
        """Boolean ``(n_sites, 4)`` mask of alleles observed at least once."""

        return self.allele_totals() > 0

    def missing_counts(self) -> np.ndarray:
        return self._slot_totals[:, MISSING_SLOT].copy()

    @cached_property
    def _calls_by_row(self) -> sparse.csr_matrix:
        return self.calls.tocsr()

    def deviation_profiles(self) -> sparse.csr_matrix:
        """Sequence × store-row matrix of non-reference allele calls (missing excluded)."""

        coo = self.calls.tocoo()
        keep = (coo.row % N_SLOTS) != MISSING_SLOT
        return sparse.csr_matrix(
            (np.ones(int(keep.sum()), dtype=np.float64), (coo.col[keep], coo.row[keep])),
            shape=(self.n_sequences, self.n_sites * N_SLOTS),
        )

    def subset(self, indices: Iterable[int]) -> SparseCountStore:
        """Return a store restricted to ``indices`` (in the order given).

        Reference alleles are re-derived for the subset and sites without any
        observed call among the selected sequences are dropped.
        """

        index_array = self._validate_indices(indices)
        if index_array.size == 0:
            raise EmptyInputError("Cannot build a sub-store without sequences")

        selected = self.calls[:, index_array].tocoo()
        rows = selected.row.astype(np.int64)
        columns = selected.col.astype(np.int64)
        n_members = int(index_array.size)
        site_range = np.arange(self.n_sites)

        slot_totals = np.bincount(rows, minlength=self.n_sites * N_SLOTS).reshape(self.n_sites, N_SLOTS)
        totals = slot_totals[:, :N_ALLELES].copy()
        totals[site_range, self.reference] += n_members - slot_totals.sum(axis=1)

        keep = totals.sum(axis=1) > 0
        if not keep.any():
            raise EmptyInputError(
                f"Sub-store of {n_members} sequences contains no informative sites"
            )

        new_reference = totals.argmax(axis=1).astype(np.int8)
        changed = keep & (new_reference != self.reference)

        if changed.any():
            sites = rows // N_SLOTS
            slots = rows % N_SLOTS
            changed_sites = np.flatnonzero(changed)
            position = np.full(self.n_sites, -1, dtype=np.int64)
            position[changed_sites] = np.arange(changed_sites.size)

            at_changed = changed[sites]
            explicit = np.zeros((changed_sites.size, n_members), dtype=bool)
            explicit[position[sites[at_changed]], columns[at_changed]] = True
            implicit_site, implicit_column = np.nonzero(~explicit)
            old_sites = changed_sites[implicit_site]
            restored_rows = old_sites * N_SLOTS + self.reference[old_sites].astype(np.int64)

            becomes_reference = at_changed & (slots == new_reference[sites])
            rows = np.concatenate((rows[~becomes_reference], restored_rows))
            columns = np.concatenate((columns[~becomes_reference], implicit_column.astype(np.int64)))

        sites = rows // N_SLOTS
        slots = rows % N_SLOTS
        new_index = np.full(self.n_sites, -1, dtype=np.int64)
        new_index[keep] = np.arange(int(keep.sum()))
        retained = keep[sites]

        calls = sparse.csc_matrix(
            (
                np.ones(int(retained.sum()), dtype=np.int8),
                (new_index[sites[retained]] * N_SLOTS + slots[retained], columns[retained]),
            ),
            shape=(int(keep.sum()) * N_SLOTS, n_members),
        )
        return SparseCountStore(
            sequence_ids=tuple(self.sequence_ids[index] for index in index_array),
            reference=new_reference[keep],
            calls=calls,
            site_positions=self.site_positions[keep],
        )

    def resample_sites(self, site_indices: Iterable[int]) -> SparseCountStore:
        """Return a store whose sites are ``site_indices`` of this one (repeats allowed)."""

        if not isinstance(site_indices, np.ndarray):
            site_indices = list(site_indices)
        sites = np.asarray(site_indices, dtype=np.int64).ravel()
        if sites.size == 0:
            raise EmptyInputError("Cannot resample zero sites")
        if sites.min() < 0 or sites.max() >= self.n_sites:
            raise MismatchedDimensions(
                f"Site indices must fall within [0, {self.n_sites})"
            )

        row_index = (sites[:, None] * N_SLOTS + np.arange(N_SLOTS)[None, :]).ravel()
        calls = self._calls_by_row[row_index].tocsc()
        return SparseCountStore(
            sequence_ids=self.sequence_ids,
            reference=self.reference[sites],
            calls=calls,
            site_positions=self.site_positions[sites],
        )

    def summary(self) -> dict[str, float | int]:
        cells = self.n_sites * self.n_sequences
        return {
            "n_sequences": self.n_sequences,
            "n_sites": self.n_sites,
            "nnz": self.nnz,
            "density": self.nnz / cells if cells else 0.0,
        }

    def _validate_indices(self, indices: Iterable[int]) -> np.ndarray:
        if isinstance(indices, np.ndarray):
            index_array = indices.astype(np.int64, copy=False).ravel()
        else:
            index_array = np.fromiter((int(index) for index in indices), dtype=np.int64)
        if index_array.size == 0:
            return index_array
        if index_array.min() < 0 or index_array.max() >= self.n_sequences:
            raise MismatchedDimensions(
                f"Sequence indices must fall within [0, {self.n_sequences})"
            )
        if np.unique(index_array).size != index_array.size:
            raise MismatchedDimensions("Sequence indices must be unique")
        return index_array


__all__ = [
    "ALPHABET",
    "ClusterCounts",
    "MISSING_SLOT",
    "N_ALLELES",
    "N_SLOTS",
    "SparseCountStore",
]
