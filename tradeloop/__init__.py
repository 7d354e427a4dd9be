"""Tick execution engine for AI-driven trading sessions."""

__version__ = "0.4.0"
