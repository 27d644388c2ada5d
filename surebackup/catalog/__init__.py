"""Backup catalog client module."""

from surebackup.catalog.client import CatalogClient
from surebackup.catalog.config import CatalogConfig
from surebackup.catalog.errors import (
    AuthenticationError,
    CatalogError,
    CatalogRequestError,
    TransientCatalogError,
)

__all__ = [
    "AuthenticationError",
    "CatalogClient",
    "CatalogConfig",
    "CatalogError",
    "CatalogRequestError",
    "TransientCatalogError",
]
