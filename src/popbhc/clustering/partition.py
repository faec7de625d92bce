"""Posterior partitions cut from a dendrogram or an externally supplied tree."""

from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass
from typing import Hashable, Iterable, Sequence

import numpy as np
import pandas as pd
from Bio.Phylo.BaseTree import Clade, Tree

from ..data.store import ClusterCounts, SparseCountStore
from ..errors import EmptyInputError, InvalidTree, MismatchedDimensions
from ..scoring.likelihood import MergeLikelihood, NodeScore
from ..scoring.prior import Prior
from .engine import ClusterNode, Dendrogram


logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Partition:
    """Labels ``1..K`` per sequence, numbered by each cluster's smallest index."""

    labels: np.ndarray
    sequence_ids: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        labels = np.array(self.labels, dtype=np.int64, copy=True).ravel()
        if labels.size == 0:
            raise EmptyInputError("Partition covers no sequences")
        unique = np.unique(labels)
        if unique[0] != 1 or unique[-1] != unique.size:
            raise ValueError("Partition labels must be contiguous from 1")
        sequence_ids = tuple(str(sequence_id) for sequence_id in self.sequence_ids)
        if sequence_ids and len(sequence_ids) != labels.size:
            raise MismatchedDimensions(
                f"{len(sequence_ids)} sequence ids supplied for {labels.size} labels"
            )
        labels.setflags(write=False)
        object.__setattr__(self, "labels", labels)
        object.__setattr__(self, "sequence_ids", sequence_ids)

    @classmethod
    def from_labels(
        cls,
        labels: Iterable[Hashable],
        sequence_ids: Sequence[str] = (),
    ) -> Partition:
        """Renumber arbitrary labels in order of first appearance."""

        mapping: dict[Hashable, int] = {}
        numbered = [mapping.setdefault(label, len(mapping) + 1) for label in labels]
        return cls(np.asarray(numbered, dtype=np.int64), tuple(sequence_ids))

    @classmethod
    def from_groups(
        cls,
        groups: Iterable[Iterable[int]],
        n_sequences: int,
        sequence_ids: Sequence[str] = (),
    ) -> Partition:
        labels = np.zeros(n_sequences, dtype=np.int64)
        ordered = sorted((sorted(int(index) for index in group) for group in groups), key=lambda group: group[0])
        for label, group in enumerate(ordered, start=1):
            if np.any(labels[group] != 0):
                raise ValueError("Partition groups overlap")
            labels[group] = label
        if np.any(labels == 0):
            raise ValueError("Partition groups do not cover every sequence")
        return cls(labels, tuple(sequence_ids))

    def __len__(self) -> int:
        return int(self.labels.size)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Partition):
            return NotImplemented
        return np.array_equal(self.labels, other.labels) and self.sequence_ids == other.sequence_ids

    @property
    def n_sequences(self) -> int:
        return int(self.labels.size)

    @property
    def n_clusters(self) -> int:
        return int(self.labels.max())

    def clusters(self) -> list[np.ndarray]:
        """Sequence indices of each cluster, in label order."""

        order = np.argsort(self.labels, kind="stable")
        boundaries = np.flatnonzero(np.diff(self.labels[order])) + 1
        return np.split(order, boundaries)

    def sizes(self) -> np.ndarray:
        return np.bincount(self.labels)[1:]

    def to_frame(self) -> pd.DataFrame:
        ids = self.sequence_ids or tuple(str(index) for index in range(self.n_sequences))
        return pd.DataFrame({"SequenceId": list(ids), "Cluster": self.labels})


def select_nodes(dendrogram: Dendrogram, threshold: float = 0.5) -> list[int]:
    """Return the node ids of the posterior-optimal cut, in member order.

    A node is kept whole when it is a leaf or its merge probability ``r`` is at
    least ``threshold``; otherwise both children are examined.
    """

    if not 0 < threshold <= 1:
        raise ValueError("threshold must lie in (0, 1]")
    log_threshold = math.log(threshold)

    selected: list[int] = []
    stack = [dendrogram.root]
    while stack:
        node = dendrogram[stack.pop()]
        if node.is_leaf or node.log_r >= log_threshold:
            selected.append(node.index)
            continue
        stack.append(node.right)  # type: ignore[arg-type]
        stack.append(node.left)  # type: ignore[arg-type]
    return sorted(selected, key=lambda node_id: dendrogram[node_id].first_member)


def select_partition(dendrogram: Dendrogram, threshold: float = 0.5) -> Partition:
    """Cut ``dendrogram`` into its posterior-optimal partition."""

    groups = [dendrogram.members(node_id) for node_id in select_nodes(dendrogram, threshold)]
    partition = Partition.from_groups(groups, dendrogram.n_sequences, dendrogram.sequence_ids)
    logger.info(f"Selected {partition.n_clusters} clusters at threshold {threshold}")
    return partition


def _validate_tree(store: SparseCountStore, tree: Tree | Clade) -> list[Clade]:
    """Check labels and shape; return the clades in post-order."""

    root = tree.root if isinstance(tree, Tree) else tree
    if not isinstance(root, Clade):
        raise InvalidTree(f"Expected a Bio.Phylo tree or clade, got {type(tree).__name__}")

    post_order: list[Clade] = []
    leaf_names: list[str] = []
    stack: list[tuple[Clade, bool]] = [(root, False)]
    while stack:
        clade, expanded = stack.pop()
        children = list(clade.clades)
        if not children:
            if clade.name is None or not str(clade.name):
                raise InvalidTree("Tree contains an unlabelled leaf")
            leaf_names.append(str(clade.name))
            post_order.append(clade)
            continue
        if expanded:
            post_order.append(clade)
            continue
        if len(children) != 2:
            label = f"'{clade.name}'" if clade.name else "an internal clade"
            raise InvalidTree(
                f"Tree must be rooted and bifurcating; {label} has {len(children)} children"
            )
        stack.append((clade, True))
        stack.append((children[1], False))
        stack.append((children[0], False))

    duplicated = sorted(name for name, count in Counter(leaf_names).items() if count > 1)
    if duplicated:
        raise InvalidTree(f"Tree leaf labels are duplicated: {', '.join(duplicated[:5])}")
    known = set(store.sequence_ids)
    unknown = sorted(set(leaf_names) - known)
    missing = sorted(known - set(leaf_names))
    if unknown or missing:
        details = []
        if unknown:
            details.append(f"not in alignment: {', '.join(unknown[:5])}")
        if missing:
            details.append(f"absent from tree: {', '.join(missing[:5])}")
        raise InvalidTree(f"Tree leaves do not match the sequence ids ({'; '.join(details)})")
    return post_order


def dendrogram_from_tree(
    store: SparseCountStore,
    tree: Tree | Clade,
    prior: Prior,
    *,
    concentration: float | None = None,
) -> Dendrogram:
    """Score every merge of an external rooted bifurcating tree against ``store``.

    The tree is validated before any likelihood is evaluated; its topology is
    kept as given and only the likelihoods and merge probabilities are
    recomputed from the store.
    """

    post_order = _validate_tree(store, tree)
    if store.n_sequences < 2:
        raise EmptyInputError("At least two sequences are required to score a tree")

    likelihood = MergeLikelihood(store, prior, concentration=concentration)
    nodes: list[ClusterNode] = []
    pending_counts: dict[int, ClusterCounts] = {}
    for index in range(store.n_sequences):
        counts = store.leaf_counts(index)
        nodes.append(
            ClusterNode(
                index=index,
                size=1,
                first_member=index,
                score=likelihood.score_leaf(counts),
                members=(index,),
            )
        )
        pending_counts[index] = counts

    node_of: dict[int, int] = {}
    for clade in post_order:
        if not clade.clades:
            node_of[id(clade)] = store.index_by_id[str(clade.name)]
            continue
        left = nodes[node_of[id(clade.clades[0])]]
        right = nodes[node_of[id(clade.clades[1])]]
        left_counts = pending_counts.pop(left.index)
        right_counts = pending_counts.pop(right.index)
        score = likelihood.merge_bayes_factor(
            _Scored(left_counts, left.score), _Scored(right_counts, right.score)
        )
        merged = ClusterNode.merged(len(nodes), left, right, score, len(nodes) - store.n_sequences)
        nodes.append(merged)
        pending_counts[merged.index] = left_counts + right_counts
        node_of[id(clade)] = merged.index

    logger.info(f"Scored external tree with {store.n_sequences} leaves")
    return Dendrogram(
        nodes=tuple(nodes),
        store=store,
        sequence_index=np.arange(store.n_sequences, dtype=np.int64),
        parameters={
            "source": "tree",
            "concentration": likelihood.concentration,
            "prior_policy": prior.policy.value,
            "prior_scale": prior.scale,
            "n_sequences": store.n_sequences,
            "n_sites": store.n_sites,
        },
    )


def partition_from_tree(
    store: SparseCountStore,
    tree: Tree | Clade,
    prior: Prior,
    *,
    concentration: float | None = None,
    threshold: float = 0.5,
) -> Partition:
    """Partition ``store`` by cutting an external tree at its posterior-optimal nodes."""

    dendrogram = dendrogram_from_tree(store, tree, prior, concentration=concentration)
    return select_partition(dendrogram, threshold)


@dataclass(slots=True)
class _Scored:
    counts: ClusterCounts
    score: NodeScore


__all__ = [
    "Partition",
    "dendrogram_from_tree",
    "partition_from_tree",
    "select_nodes",
    "select_partition",
]
