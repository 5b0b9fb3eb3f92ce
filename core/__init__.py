"""Core module - shared infrastructure for connectors and flows.

Settings, the exception hierarchy, structured logging and metrics, and token
encryption live here. Nothing in this package knows about a specific partner
system or business flow.
"""

__version__ = "1.0.0"
