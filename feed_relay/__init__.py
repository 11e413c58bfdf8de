"""Relay status incidents and commit comments into chat channels."""

__version__ = "0.4.0"
