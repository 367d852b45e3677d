"""Expense Tracker: personal and family expense tracking API."""

__version__ = "1.0.0"
