"""Recursive multi-resolution partitioning."""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from typing import Callable

import numpy as np
import pandas as pd

from ..data.store import SparseCountStore
from ..errors import BHCError
from ..scoring.prior import PriorPolicy, PriorSearchParameters, optimise_prior
from .engine import BHCEngine, Dendrogram
from .partition import Partition, select_partition
from .seed import coarse_seed_partition


logger = logging.getLogger(__name__)

STOP_PROBABILITY = 0.5


@dataclass(frozen=True, eq=False)
class MultiResolutionPartition:
    """Strictly nested partitions, coarsest first."""

    levels: tuple[Partition, ...]
    sequence_ids: tuple[str, ...]

    @property
    def n_levels(self) -> int:
        return len(self.levels)

    def level(self, number: int) -> Partition:
        """Return ``Level number`` (1-based)."""

        if not 1 <= number <= self.n_levels:
            raise IndexError(f"Level {number} is outside 1..{self.n_levels}")
        return self.levels[number - 1]

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame({"Isolates": list(self.sequence_ids)})
        for number, partition in enumerate(self.levels, start=1):
            frame[f"Level {number}"] = partition.labels
        return frame


@dataclass(frozen=True, slots=True)
class _BranchTask:
    indices: np.ndarray
    policy: PriorPolicy
    search: PriorSearchParameters
    engine: BHCEngine
    k_init: int | None
    seed: bool


def _build_level(
    store: SparseCountStore,
    policy: PriorPolicy,
    search: PriorSearchParameters,
    engine: BHCEngine,
    k_init: int | None,
    seed: bool,
) -> Dendrogram:
    prior = optimise_prior(store, policy, search=search)
    seed_partition = coarse_seed_partition(store, k_init) if seed else None
    return engine.build(store, prior, seed_partition)


def _split_branch(store: SparseCountStore, task: _BranchTask) -> list[np.ndarray] | None:
    """Split one cluster; ``None`` means the cluster should stay whole."""

    sub_store = store.subset(task.indices)
    dendrogram = _build_level(sub_store, task.policy, task.search, task.engine, task.k_init, task.seed)
    if dendrogram.root_node.r >= STOP_PROBABILITY:
        return None
    partition = select_partition(dendrogram)
    return [task.indices[cluster] for cluster in partition.clusters()]


def multi_resolution(
    store: SparseCountStore,
    levels: int,
    *,
    policy: str | PriorPolicy = PriorPolicy.BAPS,
    min_split_size: int = 2,
    engine: BHCEngine | None = None,
    k_init: int | None = None,
    seed: bool = False,
    search: PriorSearchParameters | None = None,
    n_jobs: int = 1,
) -> MultiResolutionPartition:
    """Partition ``store`` into ``levels`` nested resolutions.

    Level 1 cuts the dendrogram of the whole store. Each later level rebuilds
    the prior and dendrogram for every previous-level cluster on its own and
    splits it again. A cluster stays whole once it has fewer than
    ``min_split_size`` sequences, its own root merge has ``r >= 0.5`` or its
    rebuild fails with a :class:`BHCError`.
    """

    if levels < 1:
        raise ValueError("levels must be at least 1")
    if min_split_size < 2:
        raise ValueError("min_split_size must be at least 2")
    if n_jobs < 1:
        raise ValueError("n_jobs must be at least 1")
    resolved = PriorPolicy.parse(policy)
    search = search or PriorSearchParameters()
    engine = engine or BHCEngine()

    first = select_partition(_build_level(store, resolved, search, engine, k_init, seed))
    partitions = [first]
    clusters = first.clusters()
    settled = [cluster.size < min_split_size for cluster in clusters]
    logger.info(f"Level 1: {first.n_clusters} clusters")

    executor = ProcessPoolExecutor(max_workers=n_jobs) if n_jobs > 1 else None
    try:
        for level in range(2, levels + 1):
            tasks = {
                position: _BranchTask(cluster, resolved, search, engine, k_init, seed)
                for position, (cluster, done) in enumerate(zip(clusters, settled))
                if not done
            }
            outcomes = _run_branches(store, tasks, executor)

            next_clusters: list[np.ndarray] = []
            next_settled: list[bool] = []
            for position, cluster in enumerate(clusters):
                pieces = outcomes.get(position)
                if pieces is None:
                    next_clusters.append(cluster)
                    next_settled.append(True)
                    continue
                for piece in pieces:
                    next_clusters.append(piece)
                    next_settled.append(piece.size < min_split_size)

            clusters = next_clusters
            settled = next_settled
            partition = Partition.from_groups(clusters, store.n_sequences, store.sequence_ids)
            partitions.append(partition)
            logger.info(f"Level {level}: {partition.n_clusters} clusters")
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    return MultiResolutionPartition(tuple(partitions), store.sequence_ids)


def _run_branches(
    store: SparseCountStore,
    tasks: dict[int, _BranchTask],
    executor: ProcessPoolExecutor | None,
) -> dict[int, list[np.ndarray] | None]:
    outcomes: dict[int, list[np.ndarray] | None] = {}
    if executor is None:
        for position, task in tasks.items():
            outcomes[position] = _guarded(lambda task=task: _split_branch(store, task), task)
        return outcomes

    futures = {position: executor.submit(_split_branch, store, task) for position, task in tasks.items()}
    for position, future in futures.items():
        outcomes[position] = _guarded(future.result, tasks[position])
    return outcomes


def _guarded(run: Callable[[], list[np.ndarray] | None], task: _BranchTask) -> list[np.ndarray] | None:
    try:
        return run()
    except BHCError as exc:
        logger.warning(
            f"Cluster of {task.indices.size} sequences starting at index {int(task.indices.min())} "
            f"kept whole: {exc}"
        )
        return None


__all__ = ["MultiResolutionPartition", "STOP_PROBABILITY", "multi_resolution"]
