"""
Pricing engine - subscription and billing lifecycle services.

This package provides:
- Plan catalog with versioned, point-in-time prices
- Coupon validation and atomic redemption
- Proration arithmetic on exact money values
- The subscription lifecycle state machine and its append-only ledger
- A claim-based renewal scheduler safe to run from several workers
"""

__version__ = "1.0.0"


def get_version() -> str:
    """Get pricing engine version."""
    return __version__


__all__ = ["__version__", "get_version"]
