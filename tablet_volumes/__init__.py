"""Tablet directory volume assignment, rebalancing and onboarding."""

__all__ = [
    "assigner",
    "config",
    "metadata_store",
    "onboarding",
    "randomize",
    "volumes",
]
