"""Serf agent configuration, event-script handling and agent core."""

__version__ = "0.1.0"