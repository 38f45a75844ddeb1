"""avdpool - capacity reconciliation for pooled Azure Virtual Desktop host pools

Keeps the session hosts of a pooled host pool sized to its reservations:
reservation sets are rebuilt from application groups on every pass, powered-off
hosts are resumed before new ones are created, and stale or surplus hosts are
purged. Passes for the same pool are serialized.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
