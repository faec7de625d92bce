"""Small bundled alignments for integration and regression testing.

Each scenario directory holds ``alignment.fasta`` and may add ``tree.nwk``
(a rooted Newick tree over the same ids) and ``seeds.csv`` (a seed
partition).
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

_FIXTURES_ROOT = Path(__file__).resolve().parent


def available_fixtures() -> list[str]:
    """Return the names of the fixture scenarios that ship with the package."""

    return sorted(
        entry.name for entry in _FIXTURES_ROOT.iterdir() if entry.is_dir() and not entry.name.startswith("_")
    )


def fixture_path(name: str, filename: str = "alignment.fasta") -> Path:
    """Return the absolute path to a file of fixture scenario ``name``."""

    path = _FIXTURES_ROOT / name / filename
    if not path.exists():
        available = ", ".join(available_fixtures())
        raise FileNotFoundError(
            f"File '{filename}' not found for fixture '{name}'. Available fixtures: {available}"
        )
    return path


def iter_fixture_files(name: str) -> Iterable[Path]:
    """Yield every file shipped for ``name``."""

    directory = _FIXTURES_ROOT / name
    if not directory.is_dir():
        available = ", ".join(available_fixtures())
        raise FileNotFoundError(f"Fixture '{name}' not found. Available fixtures: {available}")
    yield from sorted(path for path in directory.iterdir() if path.is_file())


__all__ = ["available_fixtures", "fixture_path", "iter_fixture_files"]
