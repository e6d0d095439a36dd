"""Access to the ISIMIP repository: search, resolve and server-side cutouts."""

from .cutout import BoundingBox, CutoutResource, request_cutout
from .query import (
    CatalogConfig,
    CatalogResult,
    DatasetDescriptor,
    FileDescriptor,
    QueryParameters,
    query_catalog,
)
from .resolve import resolve_files, resolve_resources

__all__: list[str] = [
    "BoundingBox",
    "CatalogConfig",
    "CatalogResult",
    "CutoutResource",
    "DatasetDescriptor",
    "FileDescriptor",
    "QueryParameters",
    "query_catalog",
    "request_cutout",
    "resolve_files",
    "resolve_resources",
]
