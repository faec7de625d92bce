"""Priors and marginal likelihoods for the allele-count model."""

from .likelihood import (
    MergeLikelihood,
    MergeScore,
    NodeScore,
    linkage_log_likelihood,
    log_marginal_likelihood,
)
from .prior import (
    PRIOR_BUILDERS,
    Prior,
    PriorPolicy,
    PriorSearchParameters,
    optimise_prior,
)

__all__ = [
    "MergeLikelihood",
    "MergeScore",
    "NodeScore",
    "PRIOR_BUILDERS",
    "Prior",
    "PriorPolicy",
    "PriorSearchParameters",
    "linkage_log_likelihood",
    "log_marginal_likelihood",
    "optimise_prior",
]
