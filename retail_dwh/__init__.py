"""Incremental retail warehouse maintenance: CDC streams, SCD merges and a task scheduler."""

__version__ = "0.1.0"
