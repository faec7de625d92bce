"""Tests for sparse Dirichlet-multinomial likelihoods and merge scores."""

from __future__ import annotations

import math

import numpy as np
import pytest
from scipy.special import gammaln

from popbhc.data.store import ALPHABET, SparseCountStore
from popbhc.errors import MismatchedDimensions
from popbhc.scoring.likelihood import MergeLikelihood, linkage_log_likelihood, log_marginal_likelihood
from popbhc.scoring.prior import Prior, PriorPolicy, optimise_prior


IDS = ["a", "b", "c", "d", "e"]
SEQUENCES = ["ACGTAC", "ACGTAA", "AC-TAA", "TCCTGA", "TCCAGN"]


def _dense_counts(store: SparseCountStore, indices: list[int]) -> np.ndarray:
    counts = np.zeros((store.n_sites, len(ALPHABET)), dtype=np.int64)
    for index in indices:
        sequence = SEQUENCES[index]
        for site, position in enumerate(store.site_positions):
            base = sequence[position]
            if base in ALPHABET:
                counts[site, ALPHABET.index(base)] += 1
    return counts


def _dense_log_likelihood(counts: np.ndarray, alpha: np.ndarray) -> float:
    positive = alpha > 0
    alpha_total = alpha.sum(axis=1)
    site_terms = gammaln(alpha_total) - gammaln(alpha_total + counts.sum(axis=1))
    allele_terms = gammaln(alpha[positive] + counts[positive]) - gammaln(alpha[positive])
    return float(site_terms.sum() + allele_terms.sum())


class _Leaf:
    def __init__(self, likelihood: MergeLikelihood, counts) -> None:
        self.counts = counts
        self.score = likelihood.score_leaf(counts)


@pytest.mark.parametrize("policy", ["baps", "symmetric", "hc"])
def test_sparse_likelihood_matches_dense_evaluation(policy: str) -> None:
    store = SparseCountStore.from_sequences(IDS, SEQUENCES)
    prior = optimise_prior(store, policy)
    likelihood = MergeLikelihood(store, prior)

    for indices in ([0], [2], [0, 1, 2], [3, 4], [0, 1, 2, 3, 4]):
        sparse_value = likelihood.log_likelihood(store.aggregate(indices))
        dense_value = _dense_log_likelihood(_dense_counts(store, indices), prior.alpha)
        assert sparse_value == pytest.approx(dense_value, rel=1e-10, abs=1e-10)


def test_baseline_is_cached_per_size() -> None:
    store = SparseCountStore.from_sequences(IDS, SEQUENCES)
    likelihood = MergeLikelihood(store, optimise_prior(store, "baps"))

    first = likelihood.baseline(3)
    assert likelihood.baseline(3) == first
    assert likelihood.baseline(1) != first


def test_primed_baselines_are_not_recomputed(monkeypatch: pytest.MonkeyPatch) -> None:
    store = SparseCountStore.from_sequences(IDS, SEQUENCES)
    likelihood = MergeLikelihood(store, optimise_prior(store, "baps"))
    likelihood.prime([2, 4, 2])

    def fail(*args, **kwargs):
        raise AssertionError("baseline recomputed after priming")

    monkeypatch.setattr(likelihood, "_site_baseline", fail)
    assert np.isfinite(likelihood.baseline(2))
    assert np.isfinite(likelihood.baseline(4))


def test_linkage_likelihood_replays_each_merge() -> None:
    store = SparseCountStore.from_sequences(["a", "b", "c"], ["AAC", "AAG", "CCC"])
    likelihood = MergeLikelihood(store, optimise_prior(store, "baps"))
    merges = np.array([[0.0, 1.0, 1.0, 2.0], [2.0, 3.0, 4.0, 3.0]])

    leaves = [_Leaf(likelihood, store.leaf_counts(index)) for index in range(3)]
    pair = likelihood.merge_bayes_factor(leaves[0], leaves[1])
    pair_node = _Leaf(likelihood, leaves[0].counts + leaves[1].counts)
    pair_node.score = pair.node_score()
    root = likelihood.merge_bayes_factor(leaves[2], pair_node)

    assert linkage_log_likelihood(likelihood, merges) == pytest.approx(root.log_tree)


def test_linkage_must_cover_every_sequence() -> None:
    store = SparseCountStore.from_sequences(IDS, SEQUENCES)
    likelihood = MergeLikelihood(store, optimise_prior(store, "baps"))

    with pytest.raises(MismatchedDimensions, match="Linkage"):
        linkage_log_likelihood(likelihood, np.array([[0.0, 1.0, 1.0, 2.0]]))


def test_one_shot_helper_agrees_with_evaluator() -> None:
    store = SparseCountStore.from_sequences(IDS, SEQUENCES)
    prior = optimise_prior(store, "baps")
    counts = store.aggregate([1, 3])

    assert log_marginal_likelihood(counts, prior, store) == pytest.approx(
        MergeLikelihood(store, prior).log_likelihood(counts)
    )


def test_default_concentration_is_inverse_sequence_count() -> None:
    store = SparseCountStore.from_sequences(IDS, SEQUENCES)
    likelihood = MergeLikelihood(store, optimise_prior(store, "baps"))

    assert likelihood.concentration == pytest.approx(1 / 5)


def test_leaf_score_uses_concentration() -> None:
    store = SparseCountStore.from_sequences(IDS, SEQUENCES)
    likelihood = MergeLikelihood(store, optimise_prior(store, "baps"), concentration=0.5)

    leaf = likelihood.score_leaf(store.leaf_counts(0))

    assert leaf.log_d == pytest.approx(math.log(0.5))
    assert leaf.log_tree == leaf.log_likelihood


def test_merge_probability_is_a_proper_probability() -> None:
    store = SparseCountStore.from_sequences(IDS, SEQUENCES)
    likelihood = MergeLikelihood(store, optimise_prior(store, "baps"))
    left = _Leaf(likelihood, store.leaf_counts(0))
    right = _Leaf(likelihood, store.leaf_counts(3))

    merge = likelihood.merge_bayes_factor(left, right)

    assert 0.0 < merge.r < 1.0
    assert math.exp(merge.log_r) + math.exp(merge.log_one_minus_r) == pytest.approx(1.0)
    assert merge.log_bayes_factor == pytest.approx(
        merge.log_likelihood - left.score.log_tree - right.score.log_tree
    )
    assert merge.log_odds == pytest.approx(merge.log_r - merge.log_one_minus_r)


def test_identical_pair_outranks_divergent_pair() -> None:
    store = SparseCountStore.from_sequences(
        ["p", "q", "r", "s"],
        ["AAAAA", "AAAAA", "CCCCC", "CCCCC"],
    )
    likelihood = MergeLikelihood(store, optimise_prior(store, "baps"))
    leaves = [_Leaf(likelihood, store.leaf_counts(index)) for index in range(4)]

    same = likelihood.merge_bayes_factor(leaves[0], leaves[1])
    different = likelihood.merge_bayes_factor(leaves[0], leaves[2])

    assert same.r > 0.9
    assert different.r < 0.5
    assert same.log_bayes_factor > 0 > different.log_bayes_factor


def test_prior_must_cover_observed_alleles() -> None:
    store = SparseCountStore.from_sequences(["a", "b"], ["AC", "AG"])
    alpha = np.array([[1.0, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0]])

    with pytest.raises(MismatchedDimensions, match="zero concentration"):
        MergeLikelihood(store, Prior(PriorPolicy.SYMMETRIC, alpha))


def test_prior_site_count_must_match_store() -> None:
    store = SparseCountStore.from_sequences(IDS, SEQUENCES)
    prior = optimise_prior(store, "baps").resample([0])

    with pytest.raises(MismatchedDimensions):
        MergeLikelihood(store, prior)
