"""Payroll receipt versioning, fiscal ruleset snapshots and stamping authorization."""

__version__ = "0.1.0"
