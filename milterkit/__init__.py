"""Milter protocol client, server and check command for mail filters."""

__version__ = "0.1.0"
__all__ = ["protocol", "response", "modifier", "server", "client", "cli"]