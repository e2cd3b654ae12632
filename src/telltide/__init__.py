"""TellTide - meta-event detection and webhook notification engine."""

__version__ = "0.1.0"
