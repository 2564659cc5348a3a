"""Asynchronous bulk email find / verify jobs."""

__version__ = "0.1.0"
