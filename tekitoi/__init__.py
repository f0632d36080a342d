# tekitoi/__init__.py
"""Tekitoi: an OAuth2 authorization code + PKCE broker for local and federated logins."""

__version__ = "0.1.0"
