"""Crypto portfolio valuation and P&L tracking service."""
