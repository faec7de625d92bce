"""Bootstrap co-clustering estimates over resampled sites."""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import sparse

from ..data.store import SparseCountStore
from ..errors import BHCError, EmptyInputError
from ..scoring.prior import Prior
from .engine import BHCEngine
from .partition import Partition, select_partition
from .seed import coarse_seed_partition


logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class BootstrapMatrix:
    """Symmetric co-clustering counts over ``replicates`` completed replicates."""

    counts: np.ndarray
    replicates: int
    sequence_ids: tuple[str, ...]
    requested: int | None = None

    def normalised(self) -> np.ndarray:
        """Co-clustering frequencies in ``[0, 1]``."""

        if self.replicates == 0:
            raise EmptyInputError("No bootstrap replicate completed")
        return self.counts / float(self.replicates)

    def to_frame(self, *, normalised: bool = True) -> pd.DataFrame:
        values = self.normalised() if normalised else self.counts
        return pd.DataFrame(values, index=list(self.sequence_ids), columns=list(self.sequence_ids))


def co_clustering(partition: Partition) -> np.ndarray:
    """Return the ``N x N`` 0/1 matrix of pairs sharing a cluster."""

    n = partition.n_sequences
    indicator = sparse.csr_matrix(
        (np.ones(n, dtype=np.int64), (np.arange(n), partition.labels - 1)),
        shape=(n, partition.n_clusters),
    )
    return np.asarray((indicator @ indicator.T).todense(), dtype=np.int64)


def _run_replicates(
    store: SparseCountStore,
    prior: Prior,
    engine: BHCEngine,
    seeds: list[np.random.SeedSequence],
    k_init: int | None,
    use_seed_partition: bool,
    threshold: float,
) -> tuple[np.ndarray, int]:
    """Accumulate co-clustering counts for a chunk of replicates into a private matrix."""

    accumulator = np.zeros((store.n_sequences, store.n_sequences), dtype=np.int64)
    completed = 0
    for seed in seeds:
        rng = np.random.default_rng(seed)
        sites = rng.integers(0, store.n_sites, size=store.n_sites)
        try:
            resampled = store.resample_sites(sites)
            seed_partition = coarse_seed_partition(resampled, k_init) if use_seed_partition else None
            dendrogram = engine.build(resampled, prior.resample(sites), seed_partition)
            partition = select_partition(dendrogram, threshold)
        except BHCError as exc:
            logger.warning(f"Bootstrap replicate {seed.spawn_key} excluded: {exc}")
            continue
        accumulator += co_clustering(partition)
        completed += 1
    return accumulator, completed


def bootstrap(
    store: SparseCountStore,
    replicates: int,
    prior: Prior,
    *,
    engine: BHCEngine | None = None,
    seed: int | None = None,
    k_init: int | None = None,
    use_seed_partition: bool = False,
    threshold: float = 0.5,
    n_jobs: int = 1,
) -> BootstrapMatrix:
    """Estimate co-clustering stability by resampling sites with replacement.

    Parameters
    ----------
    store:
        Sparse allele counts; each replicate draws ``store.n_sites`` sites.
    replicates:
        Number of replicates requested.
    prior:
        Prior for ``store``; its rows are resampled alongside the sites.
    seed:
        Entropy for :class:`numpy.random.SeedSequence`. Each replicate gets a
        spawned child, so results do not depend on ``n_jobs``.
    use_seed_partition:
        Seed every replicate build with :func:`coarse_seed_partition`.
    n_jobs:
        Worker processes; replicates are split into contiguous chunks.

    Returns
    -------
    BootstrapMatrix
        Counts summed over completed replicates. Replicates failing with a
        :class:`BHCError` are logged and left out of both counts and total.
    """

    if replicates < 1:
        raise ValueError("replicates must be at least 1")
    if n_jobs < 1:
        raise ValueError("n_jobs must be at least 1")
    prior.check_store(store)
    engine = engine or BHCEngine()

    seeds = np.random.SeedSequence(seed).spawn(replicates)
    chunks = [
        [seeds[index] for index in chunk]
        for chunk in np.array_split(np.arange(replicates), min(n_jobs, replicates))
    ]

    if n_jobs == 1:
        results = [
            _run_replicates(store, prior, engine, chunks[0], k_init, use_seed_partition, threshold)
        ]
    else:
        with ProcessPoolExecutor(max_workers=n_jobs) as executor:
            futures = [
                executor.submit(
                    _run_replicates, store, prior, engine, chunk, k_init, use_seed_partition, threshold
                )
                for chunk in chunks
            ]
            results = [future.result() for future in futures]

    counts = np.zeros((store.n_sequences, store.n_sequences), dtype=np.int64)
    completed = 0
    for matrix, done in results:
        counts += matrix
        completed += done

    if completed < replicates:
        logger.warning(f"{replicates - completed} of {replicates} bootstrap replicates failed")
    logger.info(f"Bootstrap finished with {completed} completed replicates")
    counts.setflags(write=False)
    return BootstrapMatrix(counts, completed, store.sequence_ids, requested=replicates)


__all__ = ["BootstrapMatrix", "bootstrap", "co_clustering"]
