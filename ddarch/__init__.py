"""Space-efficient archives of disk images and block devices."""

from .__version__ import __version__

__all__ = ["__version__"]
