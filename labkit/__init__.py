"""Simulated RPC networks, key/value services and a MapReduce coordinator."""

__version__ = "0.1.0"