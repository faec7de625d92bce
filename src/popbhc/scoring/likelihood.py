"""Dirichlet-multinomial marginal likelihoods and BHC merge probabilities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol

import numpy as np
from scipy.special import gammaln

from ..data.store import MISSING_SLOT, N_SLOTS, ClusterCounts, SparseCountStore
from ..errors import MismatchedDimensions
from .prior import Prior


@dataclass(frozen=True, slots=True)
class NodeScore:
    """Cached quantities for one cluster of a BHC tree.

    Attributes
    ----------
    log_likelihood:
        ``log p(D | H1)``, the marginal likelihood of the cluster as one population.
    log_d:
        Log Dirichlet-process weight ``log d`` of the subtree.
    log_tree:
        ``log p(D | T)``, the marginal likelihood of the subtree.
    """

    log_likelihood: float
    log_d: float
    log_tree: float


@dataclass(frozen=True, slots=True)
class MergeScore:
    """Outcome of scoring the merge of two clusters."""

    log_likelihood: float
    log_d: float
    log_tree: float
    log_r: float
    log_one_minus_r: float
    log_bayes_factor: float

    @property
    def r(self) -> float:
        return float(np.exp(self.log_r))

    @property
    def log_odds(self) -> float:
        return self.log_r - self.log_one_minus_r

    def node_score(self) -> NodeScore:
        return NodeScore(self.log_likelihood, self.log_d, self.log_tree)


class ScoredCluster(Protocol):
    counts: ClusterCounts
    score: NodeScore


class MergeLikelihood:
    """Evaluates cluster likelihoods and merge probabilities against one store.

    The per-site reference allele is implicit in the sparse counts, so the
    likelihood of a cluster of ``m`` sequences starts from a cached baseline
    (every member carrying the reference allele at every site) and is
    corrected only at the sites its non-zero entries touch. The cache fills
    lazily; call :meth:`prime` before sharing one instance across threads.
    """

    def __init__(
        self,
        store: SparseCountStore,
        prior: Prior,
        *,
        concentration: float | None = None,
    ) -> None:
        prior.check_store(store)
        alpha = prior.alpha

        stored_rows = np.unique(store.calls.indices)
        stored_sites = stored_rows // N_SLOTS
        stored_slots = stored_rows % N_SLOTS
        allele_rows = stored_slots != MISSING_SLOT
        site_range = np.arange(store.n_sites)
        alpha_reference = alpha[site_range, store.reference]
        if np.any(alpha[stored_sites[allele_rows], stored_slots[allele_rows]] <= 0) or np.any(
            alpha_reference <= 0
        ):
            raise MismatchedDimensions("Prior assigns zero concentration to an observed allele")

        if concentration is None:
            concentration = 1.0 / store.n_sequences
        if not np.isfinite(concentration) or concentration <= 0:
            raise ValueError("DP concentration must be positive")

        self.store = store
        self.prior = prior
        self.concentration = float(concentration)
        self.log_concentration = float(np.log(concentration))
        self._alpha = alpha
        self._alpha_total = alpha.sum(axis=1)
        self._alpha_reference = alpha_reference
        self._baselines: dict[int, float] = {}

    def _site_baseline(self, sites: np.ndarray | slice, size: int) -> np.ndarray:
        alpha_total = self._alpha_total[sites]
        alpha_reference = self._alpha_reference[sites]
        return (
            gammaln(alpha_total)
            - gammaln(alpha_total + size)
            + gammaln(alpha_reference + size)
            - gammaln(alpha_reference)
        )

    def baseline(self, size: int) -> float:
        """Log-likelihood of ``size`` sequences that all carry every reference allele."""

        cached = self._baselines.get(size)
        if cached is None:
            cached = float(self._site_baseline(slice(None), size).sum())
            self._baselines[size] = cached
        return cached

    def prime(self, sizes: Iterable[int]) -> None:
        """Fill the baseline cache for ``sizes`` so later lookups only read it."""

        for size in sorted(set(int(size) for size in sizes) - self._baselines.keys()):
            self.baseline(size)

    def log_likelihood(self, counts: ClusterCounts) -> float:
        """Return ``log p(D | H1)`` for the sequences aggregated in ``counts``."""

        size = counts.size
        if size == 0:
            return 0.0
        total = self.baseline(size)
        if counts.rows.size == 0:
            return total

        sites = counts.rows // N_SLOTS
        slots = counts.rows % N_SLOTS
        values = counts.counts.astype(np.float64)
        touched, inverse = np.unique(sites, return_inverse=True)
        is_missing = slots == MISSING_SLOT

        missing = np.bincount(inverse, weights=values * is_missing, minlength=touched.size)
        deviating = np.bincount(inverse, weights=values * ~is_missing, minlength=touched.size)
        observed = size - missing
        reference_count = observed - deviating

        alpha_total = self._alpha_total[touched]
        alpha_reference = self._alpha_reference[touched]
        site_terms = (
            gammaln(alpha_total)
            - gammaln(alpha_total + observed)
            + gammaln(alpha_reference + reference_count)
            - gammaln(alpha_reference)
        )

        allele = ~is_missing
        alpha_allele = self._alpha[sites[allele], slots[allele]]
        allele_terms = gammaln(alpha_allele + values[allele]) - gammaln(alpha_allele)

        correction = site_terms.sum() + allele_terms.sum() - self._site_baseline(touched, size).sum()
        return float(total + correction)

    def score_leaf(self, counts: ClusterCounts) -> NodeScore:
        """Score a leaf; seed aggregates of ``n`` sequences use ``d = alpha * Gamma(n)``."""

        log_likelihood = self.log_likelihood(counts)
        log_d = self.log_concentration + float(gammaln(counts.size))
        return NodeScore(log_likelihood, log_d, log_likelihood)

    def merge_bayes_factor(self, left: ScoredCluster, right: ScoredCluster) -> MergeScore:
        """Score merging ``left`` and ``right`` into one cluster."""

        merged = left.counts + right.counts
        log_likelihood = self.log_likelihood(merged)

        log_prior_mass = self.log_concentration + float(gammaln(merged.size))
        log_children_d = left.score.log_d + right.score.log_d
        log_d = float(np.logaddexp(log_prior_mass, log_children_d))
        log_pi = log_prior_mass - log_d
        log_children_tree = left.score.log_tree + right.score.log_tree
        log_alternative = log_children_d - log_d + log_children_tree
        log_merged = log_pi + log_likelihood
        log_tree = float(np.logaddexp(log_merged, log_alternative))

        return MergeScore(
            log_likelihood=log_likelihood,
            log_d=log_d,
            log_tree=log_tree,
            log_r=log_merged - log_tree,
            log_one_minus_r=log_alternative - log_tree,
            log_bayes_factor=log_likelihood - log_children_tree,
        )


@dataclass(frozen=True, slots=True)
class _Subtree:
    counts: ClusterCounts
    score: NodeScore


def linkage_log_likelihood(likelihood: MergeLikelihood, merges: np.ndarray) -> float:
    """Return the root ``log p(D | T)`` of a SciPy linkage over the store's sequences."""

    store = likelihood.store
    merges = np.asarray(merges)
    if merges.shape != (store.n_sequences - 1, 4):
        raise MismatchedDimensions(
            f"Linkage over {store.n_sequences} sequences needs shape "
            f"({store.n_sequences - 1}, 4); got {merges.shape}"
        )

    nodes: list[_Subtree] = []
    for index in range(store.n_sequences):
        counts = store.leaf_counts(index)
        nodes.append(_Subtree(counts, likelihood.score_leaf(counts)))
    for left, right in merges[:, :2].astype(np.int64):
        merge = likelihood.merge_bayes_factor(nodes[left], nodes[right])
        nodes.append(_Subtree(nodes[left].counts + nodes[right].counts, merge.node_score()))
    return nodes[-1].score.log_tree


def log_marginal_likelihood(counts: ClusterCounts, prior: Prior, store: SparseCountStore) -> float:
    """One-shot helper around :meth:`MergeLikelihood.log_likelihood`."""

    return MergeLikelihood(store, prior).log_likelihood(counts)


__all__ = [
    "MergeLikelihood",
    "MergeScore",
    "NodeScore",
    "ScoredCluster",
    "linkage_log_likelihood",
    "log_marginal_likelihood",
]
