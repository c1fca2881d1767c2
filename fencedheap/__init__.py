"""Fenced heap allocator over simulated sbrk memory, with resource tracking and test reporting."""

__version__ = "1.0.0"