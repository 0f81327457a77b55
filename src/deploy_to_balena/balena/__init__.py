"""balena API client for release queries and release tags."""

from .client import BalenaAPIError, BalenaClient, odata_string, release_tags_filter

__all__ = [
    "BalenaAPIError",
    "BalenaClient",
    "odata_string",
    "release_tags_filter",
]
