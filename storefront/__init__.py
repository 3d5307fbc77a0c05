"""Marketplace payment reconciliation and cache services."""

__version__ = "0.1.0"
