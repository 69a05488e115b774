"""Tasktide: personal task manager with repeating task templates."""

__version__ = "0.1.0"
