"""Repair and reimage tooling for fixed-layout handheld storage."""

from .__version__ import __version__


__all__ = ["__version__"]
