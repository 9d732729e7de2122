"""Bootable disk image builder for embedded Linux boards.

Stages a loop-backed image, partitions and formats it, populates a
foreign-architecture Debian root filesystem and patches the board's boot
environment with the freshly assigned root filesystem UUID.
"""

from .__version__ import __version__


__all__ = ["__version__"]
