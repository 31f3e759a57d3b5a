"""Extraction orchestrator for ECM document stores."""

__version__ = "0.3.0"
