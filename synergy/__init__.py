"""Synergy: task orchestration and governance for autonomous agent organizations."""

__version__ = "0.1.0"
