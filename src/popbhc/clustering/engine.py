"""Greedy Bayesian hierarchical clustering over a sparse allele store."""

from __future__ import annotations

import heapq
import logging
import math
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Iterator, Sequence

import numpy as np
import pandas as pd
from scipy import sparse

from ..data.store import ClusterCounts, SparseCountStore
from ..errors import EmptyInputError, MismatchedDimensions
from ..explain import TraceRecord, hash_payload
from ..scoring.likelihood import MergeLikelihood, MergeScore, NodeScore
from ..scoring.prior import Prior


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BHCParameters:
    """Tuning knobs for :class:`BHCEngine`.

    ``concentration`` is the Dirichlet-process concentration; ``None`` uses
    ``1 / N`` for a store of ``N`` sequences. While the frontier holds more
    than ``max_full_frontier`` clusters only the ``n_neighbors`` nearest
    clusters under the distance proxy are scored against each new cluster.
    """

    concentration: float | None = None
    max_full_frontier: int = 200
    n_neighbors: int = 10
    n_jobs: int = 1

    def __post_init__(self) -> None:
        if self.concentration is not None and not self.concentration > 0:
            raise ValueError("concentration must be positive")
        if self.max_full_frontier < 2:
            raise ValueError("max_full_frontier must be at least 2")
        if self.n_neighbors < 1:
            raise ValueError("n_neighbors must be at least 1")
        if self.n_jobs < 1:
            raise ValueError("n_jobs must be at least 1")


@dataclass(frozen=True, slots=True)
class ClusterNode:
    """Leaf or internal node of a :class:`Dendrogram` arena.

    Leaves list their sequence ``members``; internal nodes reference their two
    children by arena index and resolve members through the dendrogram.
    """

    index: int
    size: int
    first_member: int
    score: NodeScore
    members: tuple[int, ...] = ()
    left: int | None = None
    right: int | None = None
    merge: MergeScore | None = None
    step: int | None = None

    @classmethod
    def merged(
        cls,
        index: int,
        left: ClusterNode,
        right: ClusterNode,
        merge: MergeScore,
        step: int,
    ) -> ClusterNode:
        if right.first_member < left.first_member:
            left, right = right, left
        return cls(
            index=index,
            size=left.size + right.size,
            first_member=left.first_member,
            score=merge.node_score(),
            left=left.index,
            right=right.index,
            merge=merge,
            step=step,
        )

    @property
    def is_leaf(self) -> bool:
        return self.left is None

    @property
    def log_likelihood(self) -> float:
        return self.score.log_likelihood

    @property
    def log_r(self) -> float:
        return 0.0 if self.merge is None else self.merge.log_r

    @property
    def log_one_minus_r(self) -> float:
        return -math.inf if self.merge is None else self.merge.log_one_minus_r

    @property
    def r(self) -> float:
        return math.exp(self.log_r)

    @property
    def log_bayes_factor(self) -> float | None:
        return None if self.merge is None else self.merge.log_bayes_factor


@dataclass(frozen=True, eq=False, repr=False)
class Dendrogram:
    """Immutable binary merge tree over ``n_sequences`` sequences.

    Leaves occupy the first arena slots and internal nodes follow in merge
    order, so the root is always the last node. ``sequence_index`` maps the
    dendrogram's local sequence indices onto rows of ``store``.
    """

    nodes: tuple[ClusterNode, ...]
    store: SparseCountStore
    sequence_index: np.ndarray
    parameters: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        nodes = tuple(self.nodes)
        if not nodes:
            raise EmptyInputError("Dendrogram has no nodes")
        n_leaves = sum(1 for node in nodes if node.is_leaf)
        if len(nodes) - n_leaves != n_leaves - 1:
            raise ValueError(
                f"Dendrogram with {n_leaves} leaves must have {n_leaves - 1} internal nodes"
            )
        if any(not node.is_leaf for node in nodes[:n_leaves]):
            raise ValueError("Leaves must precede internal nodes in the arena")
        index = np.asarray(self.sequence_index, dtype=np.int64).ravel()
        if nodes[-1].size != index.size:
            raise MismatchedDimensions(
                f"Root covers {nodes[-1].size} sequences but {index.size} are indexed"
            )
        index.setflags(write=False)
        object.__setattr__(self, "nodes", nodes)
        object.__setattr__(self, "sequence_index", index)
        object.__setattr__(self, "parameters", dict(self.parameters))

    def __repr__(self) -> str:
        return f"Dendrogram(n_sequences={self.n_sequences}, n_leaves={self.n_leaves})"

    def __len__(self) -> int:
        return len(self.nodes)

    def __getitem__(self, node_id: int) -> ClusterNode:
        return self.nodes[node_id]

    @property
    def root(self) -> int:
        return len(self.nodes) - 1

    @property
    def root_node(self) -> ClusterNode:
        return self.nodes[-1]

    @property
    def n_sequences(self) -> int:
        return int(self.sequence_index.size)

    @property
    def n_leaves(self) -> int:
        return (len(self.nodes) + 1) // 2

    @property
    def sequence_ids(self) -> tuple[str, ...]:
        return tuple(self.store.sequence_ids[index] for index in self.sequence_index)

    @property
    def parameters_hash(self) -> str:
        return hash_payload(self.parameters)

    def leaves(self) -> list[int]:
        return list(range(self.n_leaves))

    def internal_nodes(self) -> list[int]:
        return list(range(self.n_leaves, len(self.nodes)))

    def _descendants(self, node_id: int) -> Iterator[ClusterNode]:
        stack = [node_id]
        while stack:
            node = self.nodes[stack.pop()]
            yield node
            if not node.is_leaf:
                stack.append(node.right)  # type: ignore[arg-type]
                stack.append(node.left)  # type: ignore[arg-type]

    def members(self, node_id: int) -> tuple[int, ...]:
        """Sorted local sequence indices covered by ``node_id``."""

        collected: list[int] = []
        for node in self._descendants(node_id):
            collected.extend(node.members)
        return tuple(sorted(collected))

    def counts(self, node_id: int) -> ClusterCounts:
        """Aggregated sparse counts of ``node_id``, recomputed from the store."""

        return self.store.aggregate(self.sequence_index[list(self.members(node_id))])

    def subtree(self, node_id: int) -> Dendrogram:
        """Return the induced sub-dendrogram rooted at ``node_id``, re-indexed from zero."""

        kept = sorted(node.index for node in self._descendants(node_id))
        kept_leaves = [index for index in kept if self.nodes[index].is_leaf]
        kept_internal = [index for index in kept if not self.nodes[index].is_leaf]

        local_members = np.asarray(self.members(node_id), dtype=np.int64)
        member_map = {int(old): new for new, old in enumerate(local_members)}
        node_map = {old: new for new, old in enumerate(kept_leaves + kept_internal)}

        nodes: list[ClusterNode] = []
        for old in kept_leaves:
            node = self.nodes[old]
            members = tuple(member_map[member] for member in node.members)
            nodes.append(
                replace(node, index=node_map[old], members=members, first_member=members[0])
            )
        for step, old in enumerate(kept_internal):
            node = self.nodes[old]
            nodes.append(
                replace(
                    node,
                    index=node_map[old],
                    first_member=member_map[node.first_member],
                    left=node_map[node.left],  # type: ignore[index]
                    right=node_map[node.right],  # type: ignore[index]
                    step=step,
                )
            )

        parameters = dict(self.parameters)
        parameters["subtree_of"] = self.parameters_hash
        return Dendrogram(
            nodes=tuple(nodes),
            store=self.store,
            sequence_index=self.sequence_index[local_members],
            parameters=parameters,
        )

    def to_linkage(self) -> np.ndarray:
        """SciPy linkage matrix over the leaves, using merge order as height."""

        n_leaves = self.n_leaves
        linkage = np.zeros((n_leaves - 1, 4), dtype=np.float64)
        leaf_counts = np.ones(len(self.nodes), dtype=np.int64)
        for row, node_id in enumerate(self.internal_nodes()):
            node = self.nodes[node_id]
            leaf_counts[node_id] = leaf_counts[node.left] + leaf_counts[node.right]
            linkage[row] = (node.left, node.right, row + 1, leaf_counts[node_id])
        return linkage

    def to_frame(self) -> pd.DataFrame:
        """One row per merge in merge order."""

        ids = self.sequence_ids
        records = [
            {
                "node": node.index,
                "step": node.step,
                "left": node.left,
                "right": node.right,
                "size": node.size,
                "first_member": ids[node.first_member],
                "log_likelihood": node.log_likelihood,
                "log_bayes_factor": node.log_bayes_factor,
                "log_r": node.log_r,
                "log_one_minus_r": node.log_one_minus_r,
                "r": node.r,
            }
            for node in (self.nodes[node_id] for node_id in self.internal_nodes())
        ]
        columns = [
            "node",
            "step",
            "left",
            "right",
            "size",
            "first_member",
            "log_likelihood",
            "log_bayes_factor",
            "log_r",
            "log_one_minus_r",
            "r",
        ]
        return pd.DataFrame.from_records(records, columns=columns)

    def iter_traces(self) -> Iterator[TraceRecord]:
        ids = self.sequence_ids
        parameters_hash = self.parameters_hash
        for node_id in self.internal_nodes():
            node = self.nodes[node_id]
            left = self.nodes[node.left]  # type: ignore[index]
            right = self.nodes[node.right]  # type: ignore[index]
            yield TraceRecord(
                node_id=node.index,
                stage="merge",
                metadata={"step": node.step, "parameters_hash": parameters_hash},
                cluster={
                    "size": node.size,
                    "first_member": ids[node.first_member],
                    "left": left.index,
                    "right": right.index,
                    "left_size": left.size,
                    "right_size": right.size,
                },
                likelihood={
                    "merged": node.log_likelihood,
                    "left_tree": left.score.log_tree,
                    "right_tree": right.score.log_tree,
                    "log_d": node.score.log_d,
                },
                merge={
                    "log_bayes_factor": node.log_bayes_factor,
                    "log_r": node.log_r,
                    "log_one_minus_r": node.log_one_minus_r,
                    "r": node.r,
                },
            )


class DistanceProxy:
    """Squared Euclidean distance between mean non-reference allele profiles.

    A dense Gram matrix over the initial clusters is kept; merging two
    clusters adds their rows into the slot of the first and frees the second.
    """

    def __init__(self, store: SparseCountStore, groups: Sequence[Sequence[int]]) -> None:
        profiles = store.deviation_profiles()
        if any(len(group) != 1 for group in groups):
            rows = np.repeat(np.arange(len(groups)), [len(group) for group in groups])
            columns = np.concatenate([np.asarray(group, dtype=np.int64) for group in groups])
            indicator = sparse.csr_matrix(
                (np.ones(columns.size), (rows, columns)),
                shape=(len(groups), store.n_sequences),
            )
            profiles = indicator @ profiles
        else:
            profiles = profiles[[group[0] for group in groups]]

        self._gram = np.asarray((profiles @ profiles.T).todense(), dtype=np.float64)
        self._sizes = np.array([len(group) for group in groups], dtype=np.float64)
        self._active = np.ones(len(groups), dtype=bool)
        self._slot_of = {index: index for index in range(len(groups))}
        self._node_at = np.arange(len(groups), dtype=np.int64)

    def distances(self, node_id: int) -> tuple[np.ndarray, np.ndarray]:
        """Return ``(node_ids, distances)`` from ``node_id`` to every other active cluster."""

        slot = self._slot_of[node_id]
        others = np.flatnonzero(self._active)
        others = others[others != slot]
        sizes = self._sizes[others]
        size = self._sizes[slot]
        diagonal = self._gram[others, others]
        values = (
            self._gram[slot, slot] / (size * size)
            + diagonal / (sizes * sizes)
            - 2.0 * self._gram[slot, others] / (size * sizes)
        )
        return self._node_at[others], np.maximum(values, 0.0)

    def nearest(self, node_id: int, k: int) -> list[int]:
        node_ids, values = self.distances(node_id)
        order = np.argsort(values, kind="stable")[:k]
        return [int(node) for node in node_ids[order]]

    def pairwise(self) -> np.ndarray:
        """Dense matrix of proxy distances between the active clusters, in slot order."""

        slots = np.flatnonzero(self._active)
        gram = self._gram[np.ix_(slots, slots)]
        sizes = self._sizes[slots]
        means = np.diag(gram) / (sizes * sizes)
        values = means[:, None] + means[None, :] - 2.0 * gram / np.outer(sizes, sizes)
        np.fill_diagonal(values, 0.0)
        return np.maximum(values, 0.0)

    def merge(self, left: int, right: int, merged: int) -> None:
        kept = self._slot_of.pop(left)
        freed = self._slot_of.pop(right)
        row = self._gram[kept] + self._gram[freed]
        row[kept] = self._gram[kept, kept] + self._gram[freed, freed] + 2.0 * self._gram[kept, freed]
        self._gram[kept, :] = row
        self._gram[:, kept] = row
        self._sizes[kept] += self._sizes[freed]
        self._active[freed] = False
        self._slot_of[merged] = kept
        self._node_at[kept] = merged


@dataclass(slots=True)
class _ActiveCluster:
    counts: ClusterCounts
    score: NodeScore
    first_member: int


class _MergeFrontier:
    """Active clusters plus a lazily-invalidated heap of scored candidate pairs."""

    def __init__(
        self,
        likelihood: MergeLikelihood,
        executor: Executor | None,
        proxy: DistanceProxy | None,
    ) -> None:
        self.likelihood = likelihood
        self.executor = executor
        self.proxy = proxy
        self.active: dict[int, _ActiveCluster] = {}
        self.partners: dict[int, set[int]] = {}
        self._heap: list[tuple[float, int, int, int, int, MergeScore]] = []
        self.evaluations = 0

    def add(self, node: ClusterNode, counts: ClusterCounts) -> None:
        self.active[node.index] = _ActiveCluster(counts, node.score, node.first_member)
        self.partners[node.index] = set()

    def _score(self, pair: tuple[int, int]) -> MergeScore:
        return self.likelihood.merge_bayes_factor(self.active[pair[0]], self.active[pair[1]])

    def push(self, pairs: Iterable[tuple[int, int]]) -> None:
        fresh = sorted(
            {
                (min(i, j), max(i, j))
                for i, j in pairs
                if i != j and i in self.active and j in self.active and j not in self.partners[i]
            }
        )
        if not fresh:
            return
        if self.executor is not None and len(fresh) > 1:
            # workers only read the baseline cache
            self.likelihood.prime(self.active[i].counts.size + self.active[j].counts.size for i, j in fresh)
            scores = list(self.executor.map(self._score, fresh))
        else:
            scores = [self._score(pair) for pair in fresh]
        self.evaluations += len(fresh)

        for (i, j), score in zip(fresh, scores):
            self.partners[i].add(j)
            self.partners[j].add(i)
            first_i = self.active[i].first_member
            first_j = self.active[j].first_member
            heapq.heappush(
                self._heap,
                (-score.log_odds, min(first_i, first_j), max(first_i, first_j), i, j, score),
            )

    def push_all(self) -> None:
        ids = sorted(self.active)
        self.push((i, j) for position, i in enumerate(ids) for j in ids[position + 1 :])

    def pop_best(self) -> tuple[int, int, MergeScore] | None:
        while self._heap:
            _, _, _, i, j, score = heapq.heappop(self._heap)
            if i in self.active and j in self.active:
                return i, j, score
        return None

    def retire(self, node_id: int) -> tuple[_ActiveCluster, set[int]]:
        cluster = self.active.pop(node_id)
        partners = self.partners.pop(node_id)
        for partner in partners:
            if partner in self.partners:
                self.partners[partner].discard(node_id)
        return cluster, partners


class BHCEngine:
    """Builds a :class:`Dendrogram` by greedily merging the most probable pair."""

    def __init__(
        self,
        concentration: float | None = None,
        max_full_frontier: int = 200,
        n_neighbors: int = 10,
        n_jobs: int = 1,
    ) -> None:
        self.parameters = BHCParameters(
            concentration=concentration,
            max_full_frontier=max_full_frontier,
            n_neighbors=n_neighbors,
            n_jobs=n_jobs,
        )

    @classmethod
    def from_parameters(cls, parameters: BHCParameters) -> BHCEngine:
        return cls(
            concentration=parameters.concentration,
            max_full_frontier=parameters.max_full_frontier,
            n_neighbors=parameters.n_neighbors,
            n_jobs=parameters.n_jobs,
        )

    def __repr__(self) -> str:
        params = self.parameters
        return (
            f"BHCEngine(concentration={params.concentration}, "
            f"max_full_frontier={params.max_full_frontier}, "
            f"n_neighbors={params.n_neighbors}, n_jobs={params.n_jobs})"
        )

    def build(
        self,
        store: SparseCountStore,
        prior: Prior,
        seed_partition: Any | None = None,
    ) -> Dendrogram:
        """Merge every sequence of ``store`` into one dendrogram.

        Parameters
        ----------
        store:
            Sparse allele counts; at least two sequences are required.
        prior:
            Per-site concentrations covering every site of ``store``.
        seed_partition:
            Optional partition (or label sequence of length ``N``). Each seed
            cluster becomes one aggregated leaf. At least two seed clusters are
            needed so that the dendrogram holds a merge.

        Raises
        ------
        EmptyInputError
            If the store holds fewer than two sequences or the seed partition has
            fewer than two clusters.
        MismatchedDimensions
            If the prior or seed partition does not match the store.
        """

        if store.n_sequences < 2:
            raise EmptyInputError(
                f"At least two sequences are required to build a dendrogram; got {store.n_sequences}"
            )
        params = self.parameters
        groups = _initial_groups(store.n_sequences, seed_partition)
        likelihood = MergeLikelihood(store, prior, concentration=params.concentration)

        nodes: list[ClusterNode] = []
        leaf_counts: list[ClusterCounts] = []
        for members in groups:
            counts = store.aggregate(members)
            nodes.append(
                ClusterNode(
                    index=len(nodes),
                    size=len(members),
                    first_member=members[0],
                    score=likelihood.score_leaf(counts),
                    members=tuple(members),
                )
            )
            leaf_counts.append(counts)

        restricted = len(groups) > params.max_full_frontier
        proxy = DistanceProxy(store, groups) if restricted else None
        logger.info(
            f"Building dendrogram over {store.n_sequences} sequences from {len(groups)} leaves "
            f"({'neighbour-restricted' if restricted else 'all-pairs'} candidates)"
        )

        executor = ThreadPoolExecutor(max_workers=params.n_jobs) if params.n_jobs > 1 else None
        try:
            frontier = _MergeFrontier(likelihood, executor, proxy)
            for node, counts in zip(nodes, leaf_counts):
                frontier.add(node, counts)

            if restricted:
                frontier.push(
                    (node.index, neighbour)
                    for node in nodes
                    for neighbour in proxy.nearest(node.index, params.n_neighbors)  # type: ignore[union-attr]
                )
            else:
                frontier.push_all()

            step = 0
            while len(frontier.active) > 1:
                best = frontier.pop_best()
                if best is None:
                    frontier.push_all()
                    continue
                left_id, right_id, score = best

                merged = ClusterNode.merged(len(nodes), nodes[left_id], nodes[right_id], score, step)
                left, left_partners = frontier.retire(left_id)
                right, right_partners = frontier.retire(right_id)
                nodes.append(merged)
                frontier.add(merged, left.counts + right.counts)
                logger.debug(
                    f"Merge {step}: {left_id} + {right_id} -> {merged.index} "
                    f"(size={merged.size}, log_r={score.log_r:.4f}, log_bf={score.log_bayes_factor:.4f})"
                )

                if proxy is not None:
                    proxy.merge(left_id, right_id, merged.index)

                if not restricted:
                    frontier.push((merged.index, other) for other in frontier.active)
                else:
                    orphans = (left_partners | right_partners) - {left_id, right_id}
                    neighbours = proxy.nearest(merged.index, params.n_neighbors)  # type: ignore[union-attr]
                    frontier.push((merged.index, other) for other in [*neighbours, *orphans])
                    if len(frontier.active) <= params.max_full_frontier:
                        logger.debug(
                            f"Frontier reached {len(frontier.active)} clusters; scoring all remaining pairs"
                        )
                        frontier.push_all()
                        restricted = False
                step += 1
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        dendrogram = Dendrogram(
            nodes=tuple(nodes),
            store=store,
            sequence_index=np.arange(store.n_sequences, dtype=np.int64),
            parameters={
                "source": "engine",
                "concentration": likelihood.concentration,
                "max_full_frontier": params.max_full_frontier,
                "n_neighbors": params.n_neighbors,
                "prior_policy": prior.policy.value,
                "prior_scale": prior.scale,
                "n_sequences": store.n_sequences,
                "n_sites": store.n_sites,
                "n_leaves": len(groups),
            },
        )
        logger.info(
            f"Built dendrogram with {len(nodes) - len(groups)} merges "
            f"after {frontier.evaluations} pair evaluations (root r={dendrogram.root_node.r:.4f})"
        )
        return dendrogram


def _initial_groups(n_sequences: int, seed_partition: Any | None) -> list[list[int]]:
    if seed_partition is None:
        return [[index] for index in range(n_sequences)]

    labels = np.asarray(getattr(seed_partition, "labels", seed_partition)).ravel()
    if labels.size != n_sequences:
        raise MismatchedDimensions(
            f"Seed partition labels {labels.size} sequences but the store has {n_sequences}"
        )
    groups: dict[Any, list[int]] = {}
    for index, label in enumerate(labels.tolist()):
        groups.setdefault(label, []).append(index)
    if len(groups) < 2:
        raise EmptyInputError(
            f"Seed partition places all {n_sequences} sequences in one cluster; "
            "at least two seed clusters are required"
        )
    return list(groups.values())


__all__ = [
    "BHCEngine",
    "BHCParameters",
    "ClusterNode",
    "Dendrogram",
    "DistanceProxy",
]
