"""Exprsn hub: multi-tenant federated social host."""

__version__ = "0.1.0"
