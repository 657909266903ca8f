"""Lanbeacon: ephemeral, network-scoped service discovery."""

__version__ = "0.1.0"
