"""Point-in-time, verifiable export of a block storage device."""

from .__version__ import __version__

__all__ = ["__version__"]
