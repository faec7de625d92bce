"""Tests for greedy dendrogram construction."""

from __future__ import annotations

import threading

import numpy as np
import pytest
from scipy.cluster.hierarchy import is_valid_linkage

from popbhc.clustering.engine import BHCEngine, BHCParameters, DistanceProxy
from popbhc.clustering.partition import Partition, select_partition
from popbhc.data.loaders import load_alignment
from popbhc.data.store import SparseCountStore
from popbhc.errors import EmptyInputError, MismatchedDimensions
from popbhc.fixtures import fixture_path
from popbhc.scoring.likelihood import MergeLikelihood
from popbhc.scoring.prior import optimise_prior


def _fixture_store() -> SparseCountStore:
    return load_alignment(fixture_path("two_populations"))


def _build(store: SparseCountStore, policy: str = "baps", **kwargs):
    engine = BHCEngine(**kwargs)
    return engine.build(store, optimise_prior(store, policy))


def test_dendrogram_has_one_merge_per_extra_sequence() -> None:
    store = _fixture_store()

    dendrogram = _build(store)

    assert dendrogram.n_leaves == store.n_sequences
    assert len(dendrogram.internal_nodes()) == store.n_sequences - 1
    assert dendrogram.members(dendrogram.root) == tuple(range(store.n_sequences))
    assert dendrogram.root_node.size == store.n_sequences


def test_identical_sequences_collapse_into_one_cluster() -> None:
    store = SparseCountStore.from_sequences(["a", "b", "c", "d"], ["ACGTA"] * 4)

    dendrogram = _build(store)

    assert dendrogram.root_node.r > 0.5
    assert select_partition(dendrogram).n_clusters == 1


def test_divergent_pairs_form_two_clusters() -> None:
    store = SparseCountStore.from_sequences(
        ["a", "b", "c", "d"],
        ["AAAAA", "AAAAA", "CCCCC", "CCCCC"],
    )

    dendrogram = _build(store)
    partition = select_partition(dendrogram)

    assert dendrogram.root_node.r < 0.01
    assert partition.labels.tolist() == [1, 1, 2, 2]


POLICIES = ["symmetric", "optimise.symmetric", "baps", "hc"]


@pytest.mark.parametrize("policy", POLICIES)
def test_identical_sequences_collapse_under_every_policy(policy: str) -> None:
    store = SparseCountStore.from_sequences(["a", "b", "c", "d"], ["ACGTA"] * 4)

    partition = select_partition(_build(store, policy))

    assert partition.labels.tolist() == [1, 1, 1, 1]


@pytest.mark.parametrize("policy", POLICIES)
def test_divergent_pairs_split_under_every_policy(policy: str) -> None:
    store = SparseCountStore.from_sequences(
        ["a", "b", "c", "d"],
        ["AAAAA", "AAAAA", "CCCCC", "CCCCC"],
    )

    dendrogram = _build(store, policy)

    assert dendrogram.root_node.r < 0.5
    assert select_partition(dendrogram).labels.tolist() == [1, 1, 2, 2]


@pytest.mark.parametrize("length", [5, 10])
def test_optimised_symmetric_prior_keeps_divergent_pairs_apart(length: int) -> None:
    store = SparseCountStore.from_sequences(
        ["a", "b", "c", "d"],
        ["A" * length, "A" * length, "C" * length, "C" * length],
    )

    dendrogram = _build(store, "optimise.symmetric")

    assert dendrogram.root_node.r < 0.01
    assert select_partition(dendrogram).n_clusters == 2


def test_fixture_separates_the_two_populations() -> None:
    store = _fixture_store()

    partition = select_partition(_build(store))

    assert partition.labels.tolist() == [1, 1, 1, 1, 2, 2, 2, 2]


def test_builds_are_deterministic() -> None:
    store = _fixture_store()

    first = _build(store).to_linkage()
    second = _build(store).to_linkage()

    assert np.array_equal(first, second)


def test_threaded_scoring_matches_serial_build() -> None:
    store = _fixture_store()

    serial = _build(store, n_jobs=1)
    threaded = _build(store, n_jobs=2)

    assert np.array_equal(serial.to_linkage(), threaded.to_linkage())
    assert serial.root_node.log_r == pytest.approx(threaded.root_node.log_r)


def test_threaded_scoring_fills_baselines_on_the_calling_thread(monkeypatch: pytest.MonkeyPatch) -> None:
    caller = threading.current_thread()
    fills: list[threading.Thread] = []
    original = MergeLikelihood.baseline

    def recording(self: MergeLikelihood, size: int) -> float:
        if size not in self._baselines:
            fills.append(threading.current_thread())
        return original(self, size)

    monkeypatch.setattr(MergeLikelihood, "baseline", recording)
    _build(_fixture_store(), n_jobs=2)

    assert fills
    assert all(thread is caller for thread in fills)


def test_neighbour_restricted_build_still_merges_everything() -> None:
    store = _fixture_store()

    dendrogram = _build(store, max_full_frontier=2, n_neighbors=1)

    assert len(dendrogram.internal_nodes()) == store.n_sequences - 1
    assert dendrogram.members(dendrogram.root) == tuple(range(store.n_sequences))
    assert dendrogram.parameters["max_full_frontier"] == 2


def test_parent_counts_are_the_sum_of_child_counts() -> None:
    store = _fixture_store()
    dendrogram = _build(store)

    for node_id in dendrogram.internal_nodes():
        node = dendrogram[node_id]
        expected = dendrogram.counts(node.left) + dendrogram.counts(node.right)
        actual = dendrogram.counts(node_id)
        assert actual.size == node.size
        assert actual.rows.tolist() == expected.rows.tolist()
        assert actual.counts.tolist() == expected.counts.tolist()


def test_left_child_holds_the_smaller_first_member() -> None:
    dendrogram = _build(_fixture_store())

    for node_id in dendrogram.internal_nodes():
        node = dendrogram[node_id]
        assert dendrogram[node.left].first_member < dendrogram[node.right].first_member
        assert node.first_member == dendrogram[node.left].first_member


def test_seed_partition_becomes_aggregated_leaves() -> None:
    store = _fixture_store()
    seeds = Partition.from_labels(["a", "a", "a", "a", "b", "b", "c", "c"], store.sequence_ids)

    dendrogram = BHCEngine().build(store, optimise_prior(store, "baps"), seeds)

    assert dendrogram.n_leaves == 3
    assert len(dendrogram.internal_nodes()) == 2
    assert dendrogram[0].members == (0, 1, 2, 3)
    assert dendrogram.root_node.size == store.n_sequences
    assert select_partition(dendrogram).n_clusters == 2


def test_single_cluster_seed_partition_is_rejected() -> None:
    store = _fixture_store()

    with pytest.raises(EmptyInputError, match="one cluster"):
        BHCEngine().build(store, optimise_prior(store, "baps"), [1] * store.n_sequences)


def test_seed_partition_length_must_match_store() -> None:
    store = _fixture_store()

    with pytest.raises(MismatchedDimensions):
        BHCEngine().build(store, optimise_prior(store, "baps"), [1, 1, 2])


def test_prior_must_match_store() -> None:
    store = _fixture_store()
    prior = optimise_prior(store, "baps").resample([0, 1, 2])

    with pytest.raises(MismatchedDimensions):
        BHCEngine().build(store, prior)


def test_single_sequence_is_rejected() -> None:
    store = SparseCountStore.from_sequences(["only"], ["ACGT"])

    with pytest.raises(EmptyInputError):
        BHCEngine().build(store, optimise_prior(store, "baps"))


def test_parameters_are_validated() -> None:
    with pytest.raises(ValueError):
        BHCParameters(concentration=0.0)
    with pytest.raises(ValueError):
        BHCParameters(n_neighbors=0)
    with pytest.raises(ValueError):
        BHCEngine(max_full_frontier=1)


def test_linkage_matrix_is_valid_for_scipy() -> None:
    dendrogram = _build(_fixture_store())

    linkage = dendrogram.to_linkage()

    assert linkage.shape == (7, 4)
    assert is_valid_linkage(linkage)
    assert linkage[-1, 3] == 8


def test_subtree_is_reindexed_from_zero() -> None:
    store = _fixture_store()
    dendrogram = _build(store)
    root = dendrogram.root_node

    right = dendrogram.subtree(root.right)

    assert right.n_sequences == dendrogram[root.right].size
    assert right.sequence_ids == tuple(store.sequence_ids[4:])
    assert len(right.internal_nodes()) == right.n_sequences - 1
    assert right.members(right.root) == tuple(range(right.n_sequences))
    assert right.parameters["subtree_of"] == dendrogram.parameters_hash


def test_merge_table_and_traces_cover_every_merge() -> None:
    dendrogram = _build(_fixture_store())

    frame = dendrogram.to_frame()
    traces = [record.to_dict() for record in dendrogram.iter_traces()]

    assert len(frame) == 7
    assert frame["step"].tolist() == list(range(7))
    assert frame["r"].between(0, 1).all()
    assert len(traces) == 7
    assert traces[-1]["cluster.size"] == 8
    assert traces[-1]["metadata.parameters_hash"] == dendrogram.parameters_hash
    assert "merge.log_bayes_factor" in traces[0]


def test_distance_proxy_tracks_merged_profiles() -> None:
    store = SparseCountStore.from_sequences(
        ["a", "b", "c"],
        ["AAAA", "AAAC", "CCCC"],
    )
    proxy = DistanceProxy(store, [[0], [1], [2]])

    assert proxy.nearest(0, 1) == [1]
    proxy.merge(0, 1, 3)
    assert proxy.nearest(2, 1) == [3]
    assert proxy.pairwise().shape == (2, 2)
