"""Escrow state machine and reputation engine for in-person marketplace meetups."""

__version__ = "0.1.0"
