"""Payment settlement engine for a two-sided services marketplace."""

__version__ = "0.1.0"
