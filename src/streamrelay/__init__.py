"""Streaming delivery pipeline between coding-agent subprocesses and chat threads."""

__version__ = "0.1.0"
