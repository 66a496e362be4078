"""Identity and eligibility lookups consumed by the battle engine."""

from src.identity.oracle import DatabaseIdentityOracle, EngagementInputs, IdentityOracle

__all__ = [
    "DatabaseIdentityOracle",
    "EngagementInputs",
    "IdentityOracle",
]
