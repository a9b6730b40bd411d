"""Dockhand - container-packaged extension manager."""

__version__ = "0.1.0"
