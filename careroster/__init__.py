"""careroster: rostering, client records and NDIS budget tracking for care providers."""

__version__ = "0.1.0"
