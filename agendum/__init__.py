"""Agendum: unified calendar aggregation, conflict detection and slot finding."""

__version__ = "0.1.0"
