"""Clinic CRM billing and credential service (FastAPI)."""

__version__ = "0.4.0"
