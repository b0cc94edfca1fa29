"""Simulated zone-based memory allocator with allocation reports."""

__version__ = "0.1.0"