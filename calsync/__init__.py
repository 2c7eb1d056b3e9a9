"""
calsync: calendar synchronization for Microsoft 365.

Normalized calendar operations (events, availability, meeting times, rooms)
over Microsoft Graph, with tokens vended by the Auth service.
"""

__version__ = "0.1.0"
