"""hostguard: container-isolation policy reconciliation for Docker hosts."""

__version__ = "0.3.0"
