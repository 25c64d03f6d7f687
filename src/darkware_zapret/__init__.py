"""Darkware Zapret menu-bar controller."""

__version__ = "0.3.0"
