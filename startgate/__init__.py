"""startgate — dependency-aware startup orchestration and readiness probing."""

__version__ = "0.1.0"
