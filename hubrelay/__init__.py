"""hubrelay - resilience layer for long-running image-transform jobs."""

__version__ = "1.0.0"
