"""Policy status sync controller bootstrap and liveness reporting."""

__version__ = "0.1.0"
