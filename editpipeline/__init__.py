"""Resilient two-stage AI image edit pipeline."""

__version__ = "0.1.0"
