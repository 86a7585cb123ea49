"""iMIS REST API access: authenticated client and response normalization."""

from imigrate.imis.client import MAX_PAGE_SIZE, ImisClient

__all__ = [
    "MAX_PAGE_SIZE",
    "ImisClient",
]
