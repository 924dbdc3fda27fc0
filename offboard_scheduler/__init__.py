"""Scheduled offboarding across Microsoft 365, Active Directory and Exchange."""

__version__ = "0.1.0"
