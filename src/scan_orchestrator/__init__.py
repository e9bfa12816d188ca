"""Scan orchestration engine for AI visibility probes."""

__version__ = "0.1.0"
