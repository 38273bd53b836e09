"""
Waygate credential lifecycle and proactive token refresh.

Keeps OAuth2 access tokens valid for both organisation-shared credentials
and per-end-user delegated credentials.
"""

__version__ = "0.1.0"
