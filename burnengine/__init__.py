"""Safe ISO to USB writer for Linux hosts."""

from .__version__ import __version__

__all__ = ["__version__"]
