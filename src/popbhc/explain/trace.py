"""Structured merge traces for dendrogram builds."""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import json
import math
from typing import Any, Mapping


def _normalise_for_hash(value: Any) -> Any:
    """Return a JSON-serialisable representation of ``value``."""

    if isinstance(value, Mapping):
        return {str(key): _normalise_for_hash(sub_value) for key, sub_value in sorted(value.items())}

    if isinstance(value, (list, tuple)):
        return [_normalise_for_hash(item) for item in value]

    if isinstance(value, (set, frozenset)):
        return sorted(_normalise_for_hash(item) for item in value)

    if hasattr(value, "tolist"):
        return _normalise_for_hash(value.tolist())

    if isinstance(value, float) and not math.isfinite(value):
        return repr(value)

    if isinstance(value, (str, int, float, bool)) or value is None:
        return value

    if hasattr(value, "value") and isinstance(getattr(value, "value"), (str, int)):
        return value.value

    return repr(value)


def hash_payload(payload: Any) -> str:
    """Return a stable SHA-256 hash for ``payload``.

    Mappings are hashed with sorted keys and ``numpy`` values are converted to
    plain lists first, so equal parameter sets hash identically across runs.
    """

    normalised = _normalise_for_hash(payload)
    encoded = json.dumps(normalised, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


TRACE_SCHEMA_VERSION = "v1"


@dataclass(slots=True)
class TraceRecord:
    """One merge of a dendrogram build, split into flat sections."""

    node_id: int
    stage: str
    metadata: dict[str, Any] = field(default_factory=dict)
    cluster: dict[str, Any] = field(default_factory=dict)
    likelihood: dict[str, Any] = field(default_factory=dict)
    merge: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.node_id = int(self.node_id)
        self.stage = str(self.stage)

        metadata = dict(self.metadata)
        metadata.setdefault("schema_version", TRACE_SCHEMA_VERSION)
        self.metadata = metadata

    def to_dict(self) -> dict[str, Any]:
        """Return a flattened dictionary suitable for JSON/CSV output."""

        flattened: dict[str, Any] = {
            "node_id": self.node_id,
            "stage": self.stage,
        }

        for section_name, section in (
            ("metadata", self.metadata),
            ("cluster", self.cluster),
            ("likelihood", self.likelihood),
            ("merge", self.merge),
        ):
            for key, value in section.items():
                flattened[f"{section_name}.{key}"] = value

        return flattened


__all__ = ["TRACE_SCHEMA_VERSION", "TraceRecord", "hash_payload"]
