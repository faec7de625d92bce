"""Column schemas for tabular popbhc inputs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

import pandas as pd
from pandas._typing import DtypeArg


@dataclass(frozen=True)
class DatasetSchema:
    """Schema describing required columns and dtypes for a dataset."""

    name: str
    required_columns: Sequence[str]
    optional_columns: Sequence[str] = ()
    dtypes: Mapping[str, DtypeArg] = field(default_factory=dict)

    def missing_required(self, columns: Iterable[str]) -> list[str]:
        provided = set(columns)
        return sorted(column for column in self.required_columns if column not in provided)

    @property
    def expected_columns(self) -> tuple[str, ...]:
        return tuple(self.required_columns) + tuple(self.optional_columns)

    def dtype_for_read(self) -> dict[str, DtypeArg]:
        return {column: dtype for column, dtype in self.dtypes.items() if column in self.expected_columns}


STRING = pd.StringDtype()

SEED_PARTITION_SCHEMA = DatasetSchema(
    name="seed partition",
    required_columns=("SequenceId", "Cluster"),
    dtypes={"SequenceId": STRING, "Cluster": STRING},
)

SCHEMAS: Mapping[str, DatasetSchema] = {
    schema.name: schema for schema in (SEED_PARTITION_SCHEMA,)
}

__all__ = ["DatasetSchema", "SCHEMAS", "SEED_PARTITION_SCHEMA"]
