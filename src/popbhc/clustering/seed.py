"""Coarse distance-based seeding for large dendrogram builds."""

from __future__ import annotations

import logging
import math

import numpy as np
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform

from ..data.store import SparseCountStore
from ..errors import EmptyInputError
from .engine import DistanceProxy
from .partition import Partition


logger = logging.getLogger(__name__)

SEED_METHODS = ("single", "complete", "average", "weighted")


def resolve_k_init(n_sequences: int, k_init: int | None = None) -> int:
    """Return the number of seed clusters for ``n_sequences``.

    ``None`` means ``ceil(n_sequences / 4)``. The result is clamped to
    ``[2, n_sequences]``. Sequences with identical profiles can still fall
    into fewer seed clusters, and a single seed cluster cannot be built.
    """

    if n_sequences < 2:
        raise EmptyInputError(f"Seeding needs at least two sequences; got {n_sequences}")
    if k_init is None:
        k = math.ceil(n_sequences / 4)
    else:
        k = int(k_init)
        if k < 1:
            raise ValueError("k_init must be a positive integer")
    return min(max(k, 2), n_sequences)


def coarse_seed_partition(
    store: SparseCountStore,
    k_init: int | None = None,
    method: str = "average",
) -> Partition:
    """Group sequences into at most ``k_init`` seed clusters.

    Parameters
    ----------
    store:
        Sparse allele counts to seed.
    k_init:
        Requested number of seed clusters; see :func:`resolve_k_init`.
    method:
        SciPy linkage method applied to the squared distance between
        non-reference allele profiles.
    """

    if method not in SEED_METHODS:
        raise ValueError(f"Unsupported seeding method '{method}'; expected one of: {', '.join(SEED_METHODS)}")
    k = resolve_k_init(store.n_sequences, k_init)
    if k == store.n_sequences:
        return Partition(np.arange(1, store.n_sequences + 1), store.sequence_ids)

    proxy = DistanceProxy(store, [[index] for index in range(store.n_sequences)])
    condensed = squareform(proxy.pairwise(), checks=False)
    tree = linkage(condensed, method=method)
    labels = fcluster(tree, t=k, criterion="maxclust")

    partition = Partition.from_labels(labels.tolist(), store.sequence_ids)
    logger.info(
        f"Seeded {store.n_sequences} sequences into {partition.n_clusters} clusters "
        f"(k_init={k}, method={method})"
    )
    return partition


__all__ = ["SEED_METHODS", "coarse_seed_partition", "resolve_k_init"]
