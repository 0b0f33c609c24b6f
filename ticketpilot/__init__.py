"""Automated ticket resolution metered against customer hour budgets."""

__version__ = "0.1.0"
