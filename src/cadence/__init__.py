"""Cadence drives a coding-agent CLI through bounded, self-correcting iterations."""

__version__ = "0.1.0"
