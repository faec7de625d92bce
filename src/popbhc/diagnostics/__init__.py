"""Summaries of clustering runs."""

from __future__ import annotations

import math
from typing import Any, Dict, List, TypedDict

import numpy as np
import pandas as pd

from ..clustering.engine import Dendrogram
from ..clustering.partition import Partition
from ..data.store import SparseCountStore
from ..scoring.prior import Prior, PriorPolicy
from .writers import SUMMARY_BASENAME, SUMMARY_VERSION, write_csv, write_json


class ClusterSizeSummary(TypedDict):
    """Distribution of cluster sizes in a partition.

    Attributes
    ----------
    n_clusters:
        Number of clusters ``K``.
    singletons:
        Clusters holding exactly one sequence.
    largest, smallest:
        Extreme cluster sizes.
    median:
        Median cluster size.
    """

    n_clusters: int
    singletons: int
    largest: int
    smallest: int
    median: float


def summarize_partition(partition: Partition) -> ClusterSizeSummary:
    sizes = partition.sizes()
    return ClusterSizeSummary(
        n_clusters=partition.n_clusters,
        singletons=int(np.sum(sizes == 1)),
        largest=int(sizes.max()),
        smallest=int(sizes.min()),
        median=float(np.median(sizes)),
    )


def cluster_table(partition: Partition) -> pd.DataFrame:
    """One row per cluster with its size and the identifier of its first member."""

    ids = partition.sequence_ids or tuple(str(index) for index in range(partition.n_sequences))
    clusters = partition.clusters()
    return pd.DataFrame(
        {
            "Cluster": np.arange(1, len(clusters) + 1),
            "Size": [int(cluster.size) for cluster in clusters],
            "FirstMember": [ids[int(cluster[0])] for cluster in clusters],
        }
    )


def summarize_run(
    store: SparseCountStore,
    prior: Prior,
    dendrogram: Dendrogram,
    partition: Partition,
) -> Dict[str, Any]:
    """Collect store, prior, dendrogram and partition figures plus QA warnings."""

    warnings: List[str] = []
    clusters = summarize_partition(partition)
    if prior.policy is PriorPolicy.HC:
        warnings.append("The hc prior is known to over-partition; compare against baps")
    if clusters["n_clusters"] == partition.n_sequences and partition.n_sequences > 1:
        warnings.append("Every sequence was placed in its own cluster")
    if store.summary()["density"] > 0.5:
        warnings.append("More than half of all calls deviate from the reference allele")

    root = dendrogram.root_node
    return {
        "version": SUMMARY_VERSION,
        "store": store.summary(),
        "prior": prior.summary(),
        "dendrogram": {
            "n_leaves": dendrogram.n_leaves,
            "n_internal": len(dendrogram.internal_nodes()),
            "root_r": root.r,
            "root_log_bayes_factor": root.log_bayes_factor,
            "parameters_hash": dendrogram.parameters_hash,
            "parameters": {
                key: value
                for key, value in dendrogram.parameters.items()
                if not (isinstance(value, float) and not math.isfinite(value))
            },
        },
        "partition": dict(clusters),
        "warnings": warnings,
    }


__all__ = [
    "ClusterSizeSummary",
    "SUMMARY_BASENAME",
    "SUMMARY_VERSION",
    "cluster_table",
    "summarize_partition",
    "summarize_run",
    "write_csv",
    "write_json",
]
