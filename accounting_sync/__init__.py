"""
accounting_sync - Accounting provider synchronization engine

Keeps local contacts, invoices and payments consistent with an external
accounting provider reached over an OAuth2-protected REST API.
"""

__version__ = "0.1.0"
