"""Matric number reconciliation and selective remediation of class of degree records."""

__version__ = "0.1.0"
