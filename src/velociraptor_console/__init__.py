"""Remote-control client layer for Velociraptor forensics servers."""

__version__ = "0.1.0"
