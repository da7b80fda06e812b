"""Nexbit back-office: orders, balances and admin workflow over HTTP."""

__version__ = "1.0.0"
