"""Outer surfaces: HTTP API and notification collaborators."""

from solar_services.notifications import LoggingNotifier, LoggingTransport

__all__ = ["LoggingNotifier", "LoggingTransport"]
