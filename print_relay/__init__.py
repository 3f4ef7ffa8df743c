"""print-relay: remote print queue relay for host print spoolers."""

from .version import __version__

__all__ = ["__version__"]
