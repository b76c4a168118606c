"""REFINERY — governed research → decision → delivery pipeline engine."""

from refinery.identity import __version__

__all__ = ["__version__"]
