"""Dendrogram construction, partition selection and resampling."""

from .bootstrap import BootstrapMatrix, bootstrap, co_clustering
from .engine import BHCEngine, BHCParameters, ClusterNode, Dendrogram, DistanceProxy
from .multires import MultiResolutionPartition, multi_resolution
from .partition import (
    Partition,
    dendrogram_from_tree,
    partition_from_tree,
    select_nodes,
    select_partition,
)
from .seed import coarse_seed_partition, resolve_k_init

__all__ = [
    "BHCEngine",
    "BHCParameters",
    "BootstrapMatrix",
    "ClusterNode",
    "Dendrogram",
    "DistanceProxy",
    "MultiResolutionPartition",
    "Partition",
    "bootstrap",
    "co_clustering",
    "coarse_seed_partition",
    "dendrogram_from_tree",
    "multi_resolution",
    "partition_from_tree",
    "resolve_k_init",
    "select_nodes",
    "select_partition",
]
