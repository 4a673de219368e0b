"""Command line interface for home-vault."""

from .dispatcher import main

__all__ = ["main"]
