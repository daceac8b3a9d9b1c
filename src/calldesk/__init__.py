"""
Calldesk: call lifecycle service for the CRM call dashboard.
"""

__version__ = "0.1.0"
