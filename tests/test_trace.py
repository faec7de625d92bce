"""Tests for merge trace records and payload hashing."""

from __future__ import annotations

import math

import numpy as np

from popbhc.explain.trace import TRACE_SCHEMA_VERSION, TraceRecord, hash_payload
from popbhc.scoring.prior import PriorPolicy


def test_hash_ignores_key_order() -> None:
    first = {"concentration": 0.125, "n_neighbors": 10, "prior_policy": "baps"}
    second = {"prior_policy": "baps", "n_neighbors": 10, "concentration": 0.125}

    assert hash_payload(first) == hash_payload(second)
    assert hash_payload(first) != hash_payload({**first, "n_neighbors": 11})


def test_hash_accepts_numpy_enums_and_non_finite_values() -> None:
    payload = {
        "alpha": np.array([0.5, 0.5]),
        "policy": PriorPolicy.OPTIMISE_SYMMETRIC,
        "log_r": -math.inf,
    }

    assert hash_payload(payload) == hash_payload(
        {"alpha": [0.5, 0.5], "policy": "optimise.symmetric", "log_r": -math.inf}
    )


def test_trace_record_flattens_sections() -> None:
    record = TraceRecord(
        node_id=np.int64(9),
        stage="merge",
        metadata={"step": 1},
        cluster={"size": 3},
        likelihood={"merged": -4.5},
        merge={"r": 0.75},
    )

    flattened = record.to_dict()

    assert flattened == {
        "node_id": 9,
        "stage": "merge",
        "metadata.step": 1,
        "metadata.schema_version": TRACE_SCHEMA_VERSION,
        "cluster.size": 3,
        "likelihood.merged": -4.5,
        "merge.r": 0.75,
    }
