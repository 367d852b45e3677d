"""Managers for the Expense Tracker service."""
