"""Amazon SP-API report sync and finance reconciliation."""

__version__ = "0.1.0"
