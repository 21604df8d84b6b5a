"""Ephemeral service-mesh environments for end-to-end tests."""

__version__ = "0.1.0"
