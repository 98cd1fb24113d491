"""Declarative provisioning and convergence engine."""

__version__ = "0.1.0"
