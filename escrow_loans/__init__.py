"""Collateralized XRPL loans: escrowed XRP collateral against issued credit."""

__version__ = "0.1.0"
