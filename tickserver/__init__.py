"""Tick server: pushes a Server-Sent Event to every connected client at the top of each minute."""

__version__ = "1.0.0"
