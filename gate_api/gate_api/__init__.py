"""HTTP service exposing the metered-access gate."""

__version__ = "0.1.0"
