"""Tests for posterior partition selection and external trees."""

from __future__ import annotations

from io import StringIO

import numpy as np
import pytest
from Bio import Phylo

import popbhc.clustering.partition as partition_module
from popbhc.clustering.engine import BHCEngine
from popbhc.clustering.partition import (
    Partition,
    dendrogram_from_tree,
    partition_from_tree,
    select_nodes,
    select_partition,
)
from popbhc.data.loaders import load_alignment, load_tree
from popbhc.data.store import SparseCountStore
from popbhc.errors import InvalidTree
from popbhc.fixtures import fixture_path
from popbhc.scoring.prior import optimise_prior


def _fixture_store() -> SparseCountStore:
    return load_alignment(fixture_path("two_populations"))


def _newick(text: str):
    return Phylo.read(StringIO(text), "newick")


def test_labels_are_numbered_by_smallest_member() -> None:
    partition = Partition.from_groups([[3, 4], [2, 0], [1]], 5)

    assert partition.labels.tolist() == [1, 2, 1, 3, 3]
    assert partition.n_clusters == 3
    assert partition.sizes().tolist() == [2, 1, 2]
    assert [cluster.tolist() for cluster in partition.clusters()] == [[0, 2], [1], [3, 4]]


def test_from_labels_renumbers_by_first_appearance() -> None:
    partition = Partition.from_labels(["x", "y", "x", "z"], ["a", "b", "c", "d"])

    assert partition.labels.tolist() == [1, 2, 1, 3]
    assert partition.to_frame().columns.tolist() == ["SequenceId", "Cluster"]
    assert partition == Partition(np.array([1, 2, 1, 3]), ("a", "b", "c", "d"))


def test_partition_labels_are_validated() -> None:
    with pytest.raises(ValueError, match="contiguous"):
        Partition(np.array([1, 3, 3]))
    with pytest.raises(ValueError, match="cover"):
        Partition.from_groups([[0, 1]], 3)
    with pytest.raises(ValueError, match="overlap"):
        Partition.from_groups([[0, 1], [1, 2]], 3)


def test_cut_nodes_cover_every_sequence_once() -> None:
    store = _fixture_store()
    dendrogram = BHCEngine().build(store, optimise_prior(store, "baps"))

    selected = select_nodes(dendrogram)
    members = sorted(member for node_id in selected for member in dendrogram.members(node_id))

    assert members == list(range(store.n_sequences))


def test_cut_is_idempotent_on_selected_subtrees() -> None:
    store = _fixture_store()
    dendrogram = BHCEngine().build(store, optimise_prior(store, "baps"))

    for node_id in select_nodes(dendrogram):
        subtree = dendrogram.subtree(node_id)
        assert select_nodes(subtree) == [subtree.root]
        assert select_partition(subtree).n_clusters == 1


def test_threshold_of_one_keeps_only_certain_merges() -> None:
    store = _fixture_store()
    dendrogram = BHCEngine().build(store, optimise_prior(store, "baps"))

    loose = select_partition(dendrogram, threshold=0.5)
    strict = select_partition(dendrogram, threshold=1.0)

    assert strict.n_clusters >= loose.n_clusters
    with pytest.raises(ValueError):
        select_nodes(dendrogram, threshold=0.0)


def test_external_tree_partition_matches_populations() -> None:
    store = _fixture_store()
    tree = load_tree(fixture_path("two_populations", "tree.nwk"))

    partition = partition_from_tree(store, tree, optimise_prior(store, "baps"))

    assert partition.labels.tolist() == [1, 1, 1, 1, 2, 2, 2, 2]
    assert partition.sequence_ids == store.sequence_ids


def test_external_tree_keeps_its_topology() -> None:
    store = _fixture_store()
    tree = load_tree(fixture_path("two_populations", "tree.nwk"))

    dendrogram = dendrogram_from_tree(store, tree, optimise_prior(store, "baps"))

    assert len(dendrogram.internal_nodes()) == store.n_sequences - 1
    assert dendrogram.parameters["source"] == "tree"
    root = dendrogram.root_node
    assert dendrogram.members(root.left) == (0, 1, 2, 3)
    assert dendrogram.members(root.right) == (4, 5, 6, 7)
    # (A3,A4) is the first merge in post-order
    first = dendrogram[dendrogram.internal_nodes()[0]]
    assert dendrogram.members(first.index) == (2, 3)


def test_invalid_trees_are_rejected_before_scoring(monkeypatch) -> None:
    store = _fixture_store()
    prior = optimise_prior(store, "baps")

    def fail(*args, **kwargs):
        raise AssertionError("likelihood evaluated for an invalid tree")

    monkeypatch.setattr(partition_module, "MergeLikelihood", fail)

    with pytest.raises(InvalidTree, match="bifurcating"):
        dendrogram_from_tree(store, _newick("(A1,A2,A3,A4,(B1,B2),(B3,B4));"), prior)
    with pytest.raises(InvalidTree, match="not in alignment"):
        dendrogram_from_tree(store, _newick("((A1,(A2,(A3,X9))),((B1,B2),(B3,B4)));"), prior)
    with pytest.raises(InvalidTree, match="absent from tree"):
        dendrogram_from_tree(store, _newick("((A1,(A2,A3)),((B1,B2),(B3,B4)));"), prior)
    with pytest.raises(InvalidTree, match="duplicated"):
        dendrogram_from_tree(store, _newick("((A1,(A2,(A3,A1))),((B1,B2),(B3,B4)));"), prior)
