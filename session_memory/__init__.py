"""Layered, versioned compression of conversation session logs."""

from .app import SessionMemory

__version__ = "0.1.0"

__all__ = ["SessionMemory", "__version__"]
