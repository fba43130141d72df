"""HSSE incident escalation rule engine and notification pipeline."""

__version__ = "0.1.0"
