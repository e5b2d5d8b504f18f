"""Billing and credential trust core for the clinic CRM."""

__version__ = "0.4.0"
