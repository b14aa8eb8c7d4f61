"""Declarative disk provisioning.

Validates a disk layout, plans the wipe/partition/format/label/mount steps it
needs, and executes them through the system's disk utilities.
"""

from .__version__ import __version__


__all__ = ["__version__"]
