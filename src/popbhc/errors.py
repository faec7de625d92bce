"""Exception hierarchy shared by the popbhc clustering core."""

from __future__ import annotations


class BHCError(RuntimeError):
    """Base class for failures raised by the clustering core."""


class EmptyInputError(BHCError):
    """Raised when there are no sequences, no informative sites, or too few sequences to cluster."""


class UnknownPriorType(BHCError, ValueError):
    """Raised when a prior policy tag is not recognised."""

    def __init__(self, tag: object, accepted: tuple[str, ...] = ()) -> None:
        message = f"Unknown prior type '{tag}'"
        if accepted:
            message += f"; expected one of: {', '.join(accepted)}"
        super().__init__(message)
        self.tag = tag


class NonConvergence(BHCError):
    """Raised when the prior search exhausts its iteration budget."""

    def __init__(self, message: str, iterations: int | None = None) -> None:
        super().__init__(message)
        self.iterations = iterations


class InvalidTree(BHCError):
    """Raised when an external tree does not match the store or is not rooted and bifurcating."""


class MismatchedDimensions(BHCError, ValueError):
    """Raised when site or sequence counts disagree between a store and a requested selection."""


__all__ = [
    "BHCError",
    "EmptyInputError",
    "InvalidTree",
    "MismatchedDimensions",
    "NonConvergence",
    "UnknownPriorType",
]
