"""Dirichlet prior hyperparameters for the per-site allele model."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import linkage
from scipy.optimize import minimize_scalar
from scipy.spatial.distance import squareform

from ..data.store import ALPHABET, N_ALLELES, SparseCountStore
from ..errors import EmptyInputError, MismatchedDimensions, NonConvergence, UnknownPriorType


logger = logging.getLogger(__name__)

_BOUND_MARGIN = 10.0


class PriorPolicy(str, Enum):
    """Supported hyperparameter policies."""

    SYMMETRIC = "symmetric"
    OPTIMISE_SYMMETRIC = "optimise.symmetric"
    BAPS = "baps"
    HC = "hc"

    @classmethod
    def parse(cls, value: str | PriorPolicy) -> PriorPolicy:
        """Return the policy for ``value``, accepting the documented aliases."""

        if isinstance(value, PriorPolicy):
            return value
        tag = str(value).strip().lower()
        policy = _ALIASES.get(tag)
        if policy is None:
            raise UnknownPriorType(value, accepted=tuple(member.value for member in cls))
        return policy


_ALIASES: Dict[str, PriorPolicy] = {policy.value: policy for policy in PriorPolicy}
_ALIASES.update(
    {
        "optimised-symmetric": PriorPolicy.OPTIMISE_SYMMETRIC,
        "optimise-symmetric": PriorPolicy.OPTIMISE_SYMMETRIC,
        "optimise_symmetric": PriorPolicy.OPTIMISE_SYMMETRIC,
    }
)


@dataclass(frozen=True, slots=True)
class PriorSearchParameters:
    """Configuration for building priors.

    ``lower``/``upper`` bound the shared concentration searched by the
    ``optimise.symmetric`` policy. That search maximises the root marginal
    likelihood ``log p(D | T)`` of an average-linkage tree over the
    unclustered sequences; it runs on ``log c`` and stops after ``max_iter``
    evaluations or once the bracket is narrower than ``tolerance``. A result
    within ``10 * tolerance`` of either bound is logged as a warning.
    """

    symmetric_constant: float = 1.0
    lower: float = 5e-4
    upper: float = 10.0
    max_iter: int = 500
    tolerance: float = 1e-5

    def __post_init__(self) -> None:
        if self.symmetric_constant <= 0:
            raise ValueError("symmetric_constant must be positive")
        if not 0 < self.lower < self.upper:
            raise ValueError("Search bounds must satisfy 0 < lower < upper")
        if self.max_iter < 1:
            raise ValueError("max_iter must be at least 1")
        if self.tolerance <= 0:
            raise ValueError("tolerance must be positive")


@dataclass(frozen=True, slots=True, eq=False)
class Prior:
    """Per-site Dirichlet concentrations, ``0`` for alleles never observed at a site."""

    policy: PriorPolicy
    alpha: np.ndarray
    scale: float | None = None
    iterations: int | None = None

    def __post_init__(self) -> None:
        alpha = np.array(self.alpha, dtype=np.float64, copy=True)
        if alpha.ndim != 2 or alpha.shape[1] != N_ALLELES:
            raise MismatchedDimensions(
                f"Prior concentrations must have shape (n_sites, {N_ALLELES}); got {alpha.shape}"
            )
        if alpha.shape[0] == 0:
            raise EmptyInputError("Prior covers no sites")
        if not np.all(np.isfinite(alpha)) or np.any(alpha < 0):
            raise ValueError("Prior concentrations must be finite and non-negative")
        if np.any(alpha.sum(axis=1) <= 0):
            raise ValueError("Every site needs at least one positive concentration")
        alpha.setflags(write=False)
        object.__setattr__(self, "policy", PriorPolicy.parse(self.policy))
        object.__setattr__(self, "alpha", alpha)

    @property
    def n_sites(self) -> int:
        return int(self.alpha.shape[0])

    def check_store(self, store: SparseCountStore) -> None:
        """Raise ``MismatchedDimensions`` unless this prior covers ``store``'s sites."""

        if self.n_sites != store.n_sites:
            raise MismatchedDimensions(
                f"Prior covers {self.n_sites} sites but the store has {store.n_sites}"
            )

    def resample(self, site_indices: Iterable[int]) -> Prior:
        """Return the prior rows for ``site_indices`` (repeats allowed)."""

        sites = np.asarray(
            site_indices if isinstance(site_indices, np.ndarray) else list(site_indices),
            dtype=np.int64,
        ).ravel()
        if sites.size and (sites.min() < 0 or sites.max() >= self.n_sites):
            raise MismatchedDimensions(f"Site indices must fall within [0, {self.n_sites})")
        return Prior(self.policy, self.alpha[sites], scale=self.scale, iterations=self.iterations)

    def to_frame(self, site_positions: np.ndarray | None = None) -> pd.DataFrame:
        frame = pd.DataFrame(self.alpha, columns=list(ALPHABET))
        positions = np.arange(self.n_sites) if site_positions is None else np.asarray(site_positions)
        frame.insert(0, "site", positions)
        return frame

    def summary(self) -> dict[str, object]:
        positive = self.alpha[self.alpha > 0]
        return {
            "policy": self.policy.value,
            "n_sites": self.n_sites,
            "scale": self.scale,
            "iterations": self.iterations,
            "min_concentration": float(positive.min()),
            "max_concentration": float(positive.max()),
        }


def _symmetric(store: SparseCountStore, search: PriorSearchParameters) -> Prior:
    observed = store.observed_alleles()
    return Prior(
        PriorPolicy.SYMMETRIC,
        observed * search.symmetric_constant,
        scale=search.symmetric_constant,
    )


def _baps(store: SparseCountStore, search: PriorSearchParameters) -> Prior:
    observed = store.observed_alleles().astype(np.float64)
    return Prior(PriorPolicy.BAPS, observed / observed.sum(axis=1, keepdims=True))


def _hc(store: SparseCountStore, search: PriorSearchParameters) -> Prior:
    totals = store.allele_totals().astype(np.float64)
    frequencies = totals / totals.sum(axis=1, keepdims=True)
    return Prior(PriorPolicy.HC, 2.0 * frequencies)


def _profile_linkage(store: SparseCountStore) -> np.ndarray:
    """Average linkage over squared distances between sequence deviation profiles."""

    if store.n_sequences < 2:
        return np.empty((0, 4), dtype=np.float64)
    profiles = store.deviation_profiles()
    gram = np.asarray((profiles @ profiles.T).todense(), dtype=np.float64)
    norms = np.diag(gram)
    distances = np.maximum(norms[:, None] + norms[None, :] - 2.0 * gram, 0.0)
    np.fill_diagonal(distances, 0.0)
    return linkage(squareform(distances, checks=False), method="average")


def _optimise_symmetric(store: SparseCountStore, search: PriorSearchParameters) -> Prior:
    from .likelihood import MergeLikelihood, linkage_log_likelihood

    observed = store.observed_alleles()
    merges = _profile_linkage(store)

    def negative_log_likelihood(log_scale: float) -> float:
        candidate = Prior(PriorPolicy.OPTIMISE_SYMMETRIC, observed * float(np.exp(log_scale)))
        return -linkage_log_likelihood(MergeLikelihood(store, candidate), merges)

    bounds = (float(np.log(search.lower)), float(np.log(search.upper)))
    result = minimize_scalar(
        negative_log_likelihood,
        bounds=bounds,
        method="bounded",
        options={"maxiter": search.max_iter, "xatol": search.tolerance},
    )
    iterations = int(getattr(result, "nit", result.nfev))
    if not result.success:
        raise NonConvergence(
            f"Symmetric prior search did not converge within {search.max_iter} iterations: {result.message}",
            iterations=iterations,
        )

    scale = float(np.exp(result.x))
    if min(result.x - bounds[0], bounds[1] - result.x) <= _BOUND_MARGIN * search.tolerance:
        logger.warning(
            f"Symmetric concentration c={scale:.6g} sits on the search bound "
            f"[{search.lower:g}, {search.upper:g}]"
        )
    logger.info(f"Optimised symmetric concentration c={scale:.6g} after {iterations} iterations")
    return Prior(
        PriorPolicy.OPTIMISE_SYMMETRIC,
        observed * scale,
        scale=scale,
        iterations=iterations,
    )


PriorBuilder = Callable[[SparseCountStore, PriorSearchParameters], Prior]

PRIOR_BUILDERS: Dict[PriorPolicy, PriorBuilder] = {
    PriorPolicy.SYMMETRIC: _symmetric,
    PriorPolicy.OPTIMISE_SYMMETRIC: _optimise_symmetric,
    PriorPolicy.BAPS: _baps,
    PriorPolicy.HC: _hc,
}


def optimise_prior(
    store: SparseCountStore,
    policy: str | PriorPolicy,
    *,
    search: PriorSearchParameters | None = None,
) -> Prior:
    """Build the prior for ``store`` under ``policy``.

    Parameters
    ----------
    store:
        Sparse allele counts. Priors are defined only over the alleles observed
        at each site.
    policy:
        ``"symmetric"``, ``"optimise.symmetric"``, ``"baps"`` or ``"hc"`` (or a
        :class:`PriorPolicy`). The ``hc`` policy tends to over-partition and is
        kept for comparison with earlier BHC runs.
    search:
        Constants and search bounds; defaults to :class:`PriorSearchParameters`.

    Raises
    ------
    UnknownPriorType
        If ``policy`` is not recognised.
    EmptyInputError
        If ``store`` has no informative sites.
    NonConvergence
        If the ``optimise.symmetric`` search exhausts its iteration budget.
    """

    resolved = PriorPolicy.parse(policy)
    search = search or PriorSearchParameters()
    if store.n_sites == 0:
        raise EmptyInputError("Cannot build a prior over zero informative sites")

    builder = PRIOR_BUILDERS.get(resolved)
    if builder is None:
        raise UnknownPriorType(resolved.value, accepted=tuple(policy.value for policy in PRIOR_BUILDERS))

    prior = builder(store, search)
    logger.debug(f"Built {resolved.value} prior over {prior.n_sites} sites")
    return prior


__all__ = [
    "PRIOR_BUILDERS",
    "Prior",
    "PriorPolicy",
    "PriorSearchParameters",
    "optimise_prior",
]
