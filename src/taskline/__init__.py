"""Autonomous ticket pipeline orchestrator."""

__version__ = "0.3.0"
