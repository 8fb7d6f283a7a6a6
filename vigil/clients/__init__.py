"""
Third-party API clients.
"""

from vigil.clients.meli import MeliClient, OrderPage, TokenGrant

__all__ = ["MeliClient", "OrderPage", "TokenGrant"]
