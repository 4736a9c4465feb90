"""Operator command-line interface for the identity core."""

__version__ = "0.1.0"
