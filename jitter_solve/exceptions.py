"""
Exception hierarchy for the jitter solver.

Configuration and data errors abort a run before or during problem
assembly. Per-residual projection failures never escape the residual
evaluation; they are penalized in place.
"""


class JitterSolveError(Exception):
    """Base class for all jitter solver errors."""


class ConfigurationError(JitterSolveError, ValueError):
    """Malformed or contradictory run configuration."""


class DataError(JitterSolveError, ValueError):
    """Degenerate input data (empty network, collapsed window, ...)."""
