"""Storefront API access: paths and the credential-aware request pipeline."""
from . import routes
from .client import ApiCall, ApiClient

__all__ = ["ApiCall", "ApiClient", "routes"]
