"""Ping hosts through pluggable backends, with history, statistics and privilege separation."""

__version__ = "0.1.0"

__all__ = ["backend", "client", "history", "lookup", "messages", "pinger", "privsep", "server"]