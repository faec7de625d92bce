"""Tests for bootstrap co-clustering estimates."""

from __future__ import annotations

import logging

import numpy as np
import pytest

from popbhc.clustering.bootstrap import BootstrapMatrix, bootstrap, co_clustering
from popbhc.clustering.engine import BHCEngine
from popbhc.clustering.partition import Partition
from popbhc.data.loaders import load_alignment
from popbhc.errors import EmptyInputError
from popbhc.fixtures import fixture_path
from popbhc.scoring.prior import optimise_prior


def _fixture():
    store = load_alignment(fixture_path("two_populations"))
    return store, optimise_prior(store, "baps")


class _FailingFirstBuild(BHCEngine):
    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def build(self, store, prior, seed_partition=None):
        self.calls += 1
        if self.calls == 1:
            raise EmptyInputError("simulated failure")
        return super().build(store, prior, seed_partition)


def test_co_clustering_marks_shared_clusters() -> None:
    matrix = co_clustering(Partition(np.array([1, 2, 1])))

    assert matrix.tolist() == [[1, 0, 1], [0, 1, 0], [1, 0, 1]]


def test_bootstrap_matrix_is_symmetric_and_bounded() -> None:
    store, prior = _fixture()

    result = bootstrap(store, 5, prior, seed=7)

    assert result.replicates == 5
    assert result.requested == 5
    assert np.array_equal(result.counts, result.counts.T)
    assert np.all(np.diag(result.counts) == 5)
    assert result.counts.min() >= 0
    assert result.counts.max() <= 5
    normalised = result.normalised()
    assert np.all((normalised >= 0) & (normalised <= 1))


def test_bootstrap_is_reproducible_for_a_seed() -> None:
    store, prior = _fixture()

    first = bootstrap(store, 4, prior, seed=11)
    second = bootstrap(store, 4, prior, seed=11)

    assert np.array_equal(first.counts, second.counts)


def test_bootstrap_does_not_depend_on_worker_count() -> None:
    store, prior = _fixture()

    serial = bootstrap(store, 4, prior, seed=3, n_jobs=1)
    parallel = bootstrap(store, 4, prior, seed=3, n_jobs=2)

    assert np.array_equal(serial.counts, parallel.counts)
    assert parallel.replicates == 4


def test_populations_stay_together_across_replicates() -> None:
    store, prior = _fixture()

    result = bootstrap(store, 6, prior, seed=1)

    # sequences A1 and A4 are identical
    assert result.counts[0, 3] == result.replicates


def test_failed_replicates_are_excluded(caplog) -> None:
    store, prior = _fixture()

    with caplog.at_level(logging.WARNING, logger="popbhc.clustering.bootstrap"):
        result = bootstrap(store, 3, prior, engine=_FailingFirstBuild(), seed=5)

    assert result.replicates == 2
    assert result.requested == 3
    assert np.all(np.diag(result.counts) == 2)
    assert "excluded" in caplog.text


def test_seeded_replicates_cover_every_sequence() -> None:
    store, prior = _fixture()

    result = bootstrap(store, 3, prior, seed=2, use_seed_partition=True, k_init=2)

    assert np.all(np.diag(result.counts) == 3)


def test_frame_is_labelled_by_sequence() -> None:
    store, prior = _fixture()

    frame = bootstrap(store, 2, prior, seed=0).to_frame(normalised=False)

    assert frame.index.tolist() == list(store.sequence_ids)
    assert frame.columns.tolist() == list(store.sequence_ids)


def test_empty_matrix_cannot_be_normalised() -> None:
    matrix = BootstrapMatrix(np.zeros((2, 2), dtype=np.int64), 0, ("a", "b"), requested=3)

    with pytest.raises(EmptyInputError):
        matrix.normalised()


def test_replicate_count_is_validated() -> None:
    store, prior = _fixture()

    with pytest.raises(ValueError):
        bootstrap(store, 0, prior)
