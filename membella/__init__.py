"""Membella payments backend."""

__version__ = "0.1.0"
