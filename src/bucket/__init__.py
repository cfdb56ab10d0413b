"""Bucket - file sharing service with a resilient database layer."""

__version__ = "0.1.0"
