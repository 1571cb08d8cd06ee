"""Scope leases, work queues and governance gates for parallel coding agents."""

__version__ = "0.1.0"
